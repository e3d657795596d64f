import unittest
from unittest import mock

import requests

from remote_api import InMemoryRemote, RemoteDataAPI
from till_errors import RemoteError, RemoteRejected, RemoteUnavailable


def fake_response(status_code=200, body=None, text=""):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.content = b"x" if body is not None else b""
    resp.json.return_value = body
    resp.text = text
    return resp


class RemoteDataAPITest(unittest.TestCase):
    def setUp(self):
        self.session = mock.Mock()
        self.api = RemoteDataAPI("https://db.example.test/", api_key="k123", timeout=7, session=self.session)

    def test_insert_posts_rows_with_auth_headers(self):
        self.session.request.return_value = fake_response(201, [{"id": 1}])
        rows = self.api.insert_rows("sales", [{"product_id": "A", "quantity": 2}])
        self.assertEqual(rows, [{"id": 1}])
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "https://db.example.test/rest/v1/sales"))
        self.assertEqual(kwargs["json"], [{"product_id": "A", "quantity": 2}])
        self.assertEqual(kwargs["timeout"], 7)
        self.assertEqual(kwargs["headers"]["apikey"], "k123")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer k123")
        self.assertEqual(kwargs["headers"]["Prefer"], "return=representation")

    def test_update_and_select_use_eq_filters(self):
        self.session.request.return_value = fake_response(200, [])
        self.api.update_rows("stock_levels", {"product_id": "A", "branch_id": "b1"}, {"quantity": 8})
        args, kwargs = self.session.request.call_args
        self.assertEqual(args[0], "PATCH")
        self.assertEqual(kwargs["params"], {"product_id": "eq.A", "branch_id": "eq.b1"})
        self.assertEqual(kwargs["json"], {"quantity": 8})

        self.api.select_rows("products", order="name.asc")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args[0], "GET")
        self.assertEqual(kwargs["params"], {"select": "*", "order": "name.asc"})

    def test_single_object_and_empty_bodies(self):
        self.session.request.return_value = fake_response(200, {"id": 5})
        self.assertEqual(self.api.select_rows("sales"), [{"id": 5}])
        self.session.request.return_value = fake_response(204)
        self.assertEqual(self.api.update_rows("sales", {"id": 5}, {"quantity": 1}), [])

    def test_timeouts_and_connection_errors_are_unavailable(self):
        self.session.request.side_effect = requests.Timeout("slow")
        with self.assertRaises(RemoteUnavailable):
            self.api.insert_rows("sales", [])
        self.session.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(RemoteUnavailable) as ctx:
            self.api.select_rows("sales")
        self.assertTrue(ctx.exception.retryable)

    def test_error_status_is_rejected_with_message(self):
        self.session.request.return_value = fake_response(409, {"message": "duplicate key"})
        with self.assertRaises(RemoteRejected) as ctx:
            self.api.insert_rows("audit_logs", [{}])
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertIn("duplicate key", str(ctx.exception))

    def test_invalid_json_is_a_remote_error(self):
        resp = fake_response(200, [])
        resp.json.side_effect = ValueError("not json")
        self.session.request.return_value = resp
        with self.assertRaises(RemoteError):
            self.api.select_rows("sales")

    def test_unknown_collection_and_unkeyed_update_are_refused(self):
        with self.assertRaises(ValueError):
            self.api.select_rows("customers")
        with self.assertRaises(ValueError):
            self.api.update_rows("stock_levels", {}, {"quantity": 0})
        self.session.request.assert_not_called()

    def test_base_url_required(self):
        with self.assertRaises(ValueError):
            RemoteDataAPI("")


class InMemoryRemoteTest(unittest.TestCase):
    def test_failure_injection_skips_then_fails_then_recovers(self):
        remote = InMemoryRemote()
        remote.inject_failure("insert", "sales", skip=1, times=2)
        remote.insert_rows("sales", [{"product_id": "A"}])
        for _ in range(2):
            with self.assertRaises(RemoteUnavailable):
                remote.insert_rows("sales", [{"product_id": "B"}])
        remote.insert_rows("sales", [{"product_id": "C"}])
        self.assertEqual([r["product_id"] for r in remote.tables["sales"]], ["A", "C"])
        self.assertEqual(len(remote.calls_for("insert", "sales")), 4)

    def test_select_matches_and_orders(self):
        remote = InMemoryRemote()
        remote.seed("products", [{"id": "2", "name": "b"}, {"id": "1", "name": "a"}])
        self.assertEqual([r["name"] for r in remote.select_rows("products", order="name.asc")], ["a", "b"])
        self.assertEqual(remote.select_rows("products", {"id": 2})[0]["name"], "b")


if __name__ == "__main__":
    unittest.main()
