#!/usr/bin/env python3
"""
Till Sync Worker

Replays sales captured offline once the remote system of record is reachable.
Useful when the till UI is closed but the offline queue still holds sales.

Modes:
  default  watch connectivity and drain on every stable-online edge
  --once   drain once if online, exit 0 on success (or empty queue), 1 otherwise

Env vars: see till_config (TILL_QUEUE_DB, TILL_REMOTE_URL, TILL_PROBE_URL, ...)
  SYNC_INTERVAL    seconds between status log lines in watch mode (default: 60)

Run:
  python sync_worker.py
"""
import argparse
import logging
import os
import time

from till_config import configure_logging, load_settings
from till_runtime import TillRuntime

logger = logging.getLogger('sync_worker')

try:
    SYNC_INTERVAL = float(os.environ.get('SYNC_INTERVAL', '60'))
except ValueError:
    SYNC_INTERVAL = 60.0


def run_once(runtime: TillRuntime) -> int:
    if not runtime.monitor.check_now():
        logger.warning('Remote not reachable; %d sale(s) stay queued', runtime.queue.count())
        return 1
    result = runtime.driver.drain()
    if result is None:
        logger.info('Another drain is running')
        return 1
    if result.ok:
        logger.info('Drain complete: %d sale(s) synced', result.succeeded_count)
        return 0
    logger.warning('Drain stopped at #%s after %d sale(s): %s', result.failed_at,
                   result.succeeded_count, result.error)
    return 1


def watch(runtime: TillRuntime, interval: float = SYNC_INTERVAL) -> None:
    runtime.start()
    logger.info('Watching connectivity; queue=%s', runtime.settings.queue_db_path)
    try:
        while True:
            status = runtime.status()
            if status['has_pending_sales']:
                logger.info('%d sale(s) pending (online=%s, driver=%s)', status['pending_count'],
                            status['online'], status['driver_state'])
            time.sleep(interval)
    except KeyboardInterrupt:
        logger.info('Exiting on Ctrl+C')
    finally:
        runtime.stop()


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description='Replay offline till sales')
    ap.add_argument('--once', action='store_true', help='Drain once and exit')
    ap.add_argument('--db', default=None, help='Path to the offline queue SQLite file')
    ap.add_argument('--interval', type=float, default=SYNC_INTERVAL, help='Status log interval (watch mode)')
    args = ap.parse_args(argv)

    configure_logging('sync')
    overrides = {'queue_db_path': args.db} if args.db else {}
    runtime = TillRuntime(load_settings(**overrides))
    if args.once:
        return run_once(runtime)
    watch(runtime, args.interval)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
