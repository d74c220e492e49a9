# app.py
import argparse
import json
import logging
import signal
import sys
import threading

from flask import Flask, Response, jsonify, request

import config
from serial_worker import now_ms, start_workers, stop_workers
from store import LogStore, QueryCancelled, StoreError

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def create_app(store, supervisors=()):
    app = Flask(__name__)

    @app.route("/health")
    def health():
        return jsonify({
            "status": "ok",
            "devices": [{
                "device": s.device,
                "state": s.state.value,
                "lines_read": s.lines_read,
                "append_failures": s.append_failures,
                "open_failures": s.open_failures,
            } for s in supervisors],
        })

    @app.route("/history")
    def history():
        """Stream matching lines as NDJSON, newest first."""
        try:
            since = int(request.args.get("since", 0))
            until = int(request.args.get("until", now_ms() + 1))
            timeout = request.args.get("timeout", type=float)
            if "timeout" in request.args and timeout is None:
                raise ValueError("timeout must be a number")
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        device = request.args.get("device") or None

        cancel = threading.Event()
        timer = None
        if timeout is not None:
            if timeout <= 0:
                cancel.set()
            else:
                timer = threading.Timer(timeout, cancel.set)
                timer.daemon = True
                timer.start()

        try:
            records = store.query(since, until, device=device, cancel=cancel)
        except QueryCancelled:
            return jsonify({"error": "query cancelled"}), 408

        def generate():
            try:
                for record in records:
                    yield json.dumps(record.to_dict()) + "\n"
            except QueryCancelled:
                yield json.dumps({"error": "query cancelled"}) + "\n"
            except StoreError as e:
                logger.error("history query failed: %s", e)
                yield json.dumps({"error": "query failed"}) + "\n"
            finally:
                if timer is not None:
                    timer.cancel()

        return Response(generate(), mimetype="application/x-ndjson")

    return app


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Log lines from serial ports into SQLite.")
    parser.add_argument("devices", nargs="+", metavar="DEVICE", help="serial port path, e.g. /dev/ttyUSB0")
    parser.add_argument("--db", default=config.DB_PATH, help="database file, or :memory:")
    parser.add_argument("--host", default=config.HTTP_HOST)
    parser.add_argument("--port", type=int, default=config.HTTP_PORT)
    parser.add_argument("--no-http", action="store_true", help="only log, do not serve /history")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, type=str.upper, choices=LOG_LEVELS)
    return parser.parse_args(argv)


def _handle_sigterm(signum, frame):
    raise SystemExit(0)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level, format=config.LOG_FORMAT)

    try:
        store = LogStore.open(args.db)
    except StoreError as e:
        logger.critical("%s", e)
        return 1

    signal.signal(signal.SIGTERM, _handle_sigterm)
    shutdown = threading.Event()
    supervisors = start_workers(store, args.devices, shutdown)
    try:
        if args.no_http:
            while not shutdown.wait(0.5):
                pass
        else:
            create_app(store, supervisors).run(host=args.host, port=args.port, threaded=True)
    except KeyboardInterrupt:
        logger.info("interrupted")
    finally:
        stop_workers(supervisors, shutdown)
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
