"""
Clients for the remote system of record.

RemoteDataAPI talks to a PostgREST-style REST endpoint (the hosted backend's
/rest/v1/<collection>) with requests. InMemoryRemote keeps the same four
collections in process memory; it backs mock mode and the test-suite, and can
be told to fail specific calls.
"""
import copy
import itertools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from till_config import REQUEST_TIMEOUT
from till_errors import RemoteError, RemoteRejected, RemoteUnavailable
from till_models import iso_now

logger = logging.getLogger(__name__)

COLLECTIONS = ("products", "stock_levels", "sales", "audit_logs")


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
        return j.get('message') or j.get('error') or j.get('hint') or resp.text
    except Exception:
        return resp.text


class RemoteDataAPI:
    """insert / update-by-key / select against named remote collections."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        if not base_url:
            raise ValueError("base_url is required for the remote data API")
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
            'Prefer': 'return=representation',
        }
        if self.api_key:
            headers['apikey'] = self.api_key
            headers['Authorization'] = f'Bearer {self.api_key}'
        return headers

    def _url(self, collection: str) -> str:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection {collection!r}")
        return f"{self.base_url}/rest/v1/{collection}"

    @staticmethod
    def _eq_filters(match: Optional[Dict[str, Any]]) -> Dict[str, str]:
        return {key: f"eq.{value}" for key, value in (match or {}).items()}

    def _request(self, method: str, collection: str, params=None, payload=None) -> List[Dict[str, Any]]:
        url = self._url(collection)
        try:
            resp = self.session.request(method, url, headers=self._headers(), params=params,
                                        json=payload, timeout=self.timeout)
        except requests.Timeout as exc:
            raise RemoteUnavailable(f"{method} {collection} timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise RemoteUnavailable(f"{method} {collection} failed: {exc}") from exc
        if resp.status_code >= 400:
            message = _error_message_from_response(resp)
            logger.warning("Remote rejected %s %s: status=%s body=%s", method, collection,
                           resp.status_code, (message or '')[:200])
            raise RemoteRejected(f"{method} {collection} rejected ({resp.status_code}): {message}",
                                 status_code=resp.status_code)
        if not resp.content:
            return []
        try:
            body = resp.json()
        except ValueError as exc:
            raise RemoteError(f"{method} {collection} returned invalid JSON") from exc
        if isinstance(body, dict):
            return [body]
        return body or []

    def insert_rows(self, collection: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return self._request('POST', collection, payload=rows)

    def update_rows(self, collection: str, match: Dict[str, Any], values: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not match:
            raise ValueError("update_rows needs a key to match")
        return self._request('PATCH', collection, params=self._eq_filters(match), payload=values)

    def select_rows(self, collection: str, match: Optional[Dict[str, Any]] = None,
                    order: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {'select': '*'}
        params.update(self._eq_filters(match))
        if order:
            params['order'] = order
        return self._request('GET', collection, params=params)


class InMemoryRemote:
    """Same interface as RemoteDataAPI, stored in dictionaries.

    Every call is recorded in `calls` as (operation, collection, payload).
    inject_failure() arms a failure for the n-th upcoming matching call.
    """

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {name: [] for name in COLLECTIONS}
        self.calls: List[Tuple[str, str, Any]] = []
        self._failures: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def seed(self, collection: str, rows: List[Dict[str, Any]]) -> None:
        with self._lock:
            for row in rows:
                stored = dict(row)
                stored.setdefault('id', str(next(self._ids)))
                self.tables[collection].append(stored)

    def inject_failure(self, operation: str, collection: str, skip: int = 0,
                       exc: Optional[Callable[[], Exception]] = None, times: int = 1) -> None:
        """Fail the (skip+1)-th next `operation` on `collection`, `times` times in a row."""
        self._failures.append({
            'operation': operation,
            'collection': collection,
            'skip': skip,
            'times': times,
            'exc': exc or (lambda: RemoteUnavailable(f"injected {operation} {collection} failure")),
        })

    def clear_failures(self) -> None:
        self._failures = []

    def calls_for(self, operation: str, collection: str) -> List[Any]:
        return [payload for op, coll, payload in self.calls if op == operation and coll == collection]

    def _check(self, operation: str, collection: str, payload: Any) -> None:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection {collection!r}")
        self.calls.append((operation, collection, copy.deepcopy(payload)))
        for failure in self._failures:
            if failure['operation'] != operation or failure['collection'] != collection:
                continue
            if failure['skip'] > 0:
                failure['skip'] -= 1
                return
            failure['times'] -= 1
            if failure['times'] <= 0:
                self._failures.remove(failure)
            raise failure['exc']()

    @staticmethod
    def _matches(row: Dict[str, Any], match: Optional[Dict[str, Any]]) -> bool:
        return all(str(row.get(k)) == str(v) for k, v in (match or {}).items())

    def insert_rows(self, collection: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        with self._lock:
            self._check('insert', collection, rows)
            stored = []
            for row in rows:
                item = dict(row)
                item.setdefault('id', str(next(self._ids)))
                if collection == 'audit_logs':
                    item.setdefault('created_at', iso_now())
                stored.append(item)
            self.tables[collection].extend(stored)
            return copy.deepcopy(stored)

    def update_rows(self, collection: str, match: Dict[str, Any], values: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._check('update', collection, {'match': match, 'values': values})
            updated = []
            for row in self.tables[collection]:
                if self._matches(row, match):
                    row.update(values)
                    updated.append(dict(row))
            return updated

    def select_rows(self, collection: str, match: Optional[Dict[str, Any]] = None,
                    order: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            self._check('select', collection, match)
            rows = [dict(r) for r in self.tables[collection] if self._matches(r, match)]
        if order:
            field, _, direction = order.partition('.')
            rows.sort(key=lambda r: str(r.get(field) or ''), reverse=(direction == 'desc'))
        return rows
