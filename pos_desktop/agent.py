#!/usr/bin/env python3
"""
Terminal agent: local HTTP API for the POS UI plus the background sync loops.

Writes from the UI are queued locally and acknowledged immediately; reads are
served from the local store, so the register keeps working offline.
"""

import argparse
import json
import os
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import unquote, urlparse

try:
    from .jsonlog import json_log
    from .local_store import COLLECTIONS, LocalEntityStore, init_db
    from .outbox import OperationAlreadySent, PendingOperationQueue
    from .realtime import Reconciler, RealtimeListener, run_stale_sweeper
    from .sync import SyncOrchestrator
    from .transport import ApiClient, device_headers
except ImportError:  # pragma: no cover
    # Allow running as a script: `python3 pos_desktop/agent.py`
    sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
    from pos_desktop.jsonlog import json_log
    from pos_desktop.local_store import COLLECTIONS, LocalEntityStore, init_db
    from pos_desktop.outbox import OperationAlreadySent, PendingOperationQueue
    from pos_desktop.realtime import Reconciler, RealtimeListener, run_stale_sweeper
    from pos_desktop.sync import SyncOrchestrator
    from pos_desktop.transport import ApiClient, device_headers

ROOT = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.path.join(ROOT, "pos.sqlite")  # can be overridden via CLI/env (see main())
CONFIG_PATH = os.path.join(ROOT, "config.json")  # can be overridden via CLI/env (see main())

DEFAULT_CONFIG = {
    "api_base_url": "http://localhost:8001",
    "device_id": "",
    "device_token": "",
    "request_timeout_seconds": 10,
    "drain_interval_seconds": 5,
    "stale_after_seconds": 120,
    "stale_sweep_interval_seconds": 30,
    "warn_after_retries": 5,
}

# UI write endpoints and the queued operation each one becomes.
WRITE_ROUTES = {
    "/api/orders": "order.create",
    "/api/coworking-sessions": "session.open",
    "/api/cash-cuts": "cut.create",
}


def load_config():
    if not os.path.exists(CONFIG_PATH):
        save_config(DEFAULT_CONFIG)
    with open(CONFIG_PATH, "r", encoding="utf-8") as f:
        data = json.load(f)
    cfg = {**DEFAULT_CONFIG, **data}
    # Allow Docker/ops to override without rewriting the on-disk config.
    if os.environ.get("POS_API_BASE_URL"):
        cfg["api_base_url"] = os.environ["POS_API_BASE_URL"]
    if os.environ.get("POS_DEVICE_ID"):
        cfg["device_id"] = os.environ["POS_DEVICE_ID"]
    if os.environ.get("POS_DEVICE_TOKEN"):
        cfg["device_token"] = os.environ["POS_DEVICE_TOKEN"]
    return cfg


def save_config(data):
    with open(CONFIG_PATH, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


class Agent:
    """Wires the store, queue, orchestrator and listener for one device."""

    def __init__(self, cfg: dict, db_path: str):
        self.cfg = cfg
        self.db_path = db_path
        self.client = ApiClient(
            cfg.get("api_base_url") or "",
            headers=device_headers(cfg),
            timeout=float(cfg.get("request_timeout_seconds") or 10),
        )
        self.store = LocalEntityStore(db_path)
        self.queue = PendingOperationQueue(db_path)
        # Latest warning per queued operation; dropped once the operation leaves the queue.
        self.warnings: dict = {}
        self._warnings_lock = threading.Lock()
        self.orchestrator = SyncOrchestrator(
            self.queue,
            self.client,
            self.store,
            warn_after=int(cfg.get("warn_after_retries") or 5),
            on_warning=self._on_warning,
        )
        self.reconciler = Reconciler(
            self.client,
            self.store,
            COLLECTIONS,
            stale_after_seconds=float(cfg.get("stale_after_seconds") or 120),
        )
        self.wake = threading.Event()
        self.stop = threading.Event()
        self.listener = RealtimeListener(self.client, self.reconciler, on_connected=self.wake.set)
        self.threads: list = []

    def _on_warning(self, op: dict) -> None:
        with self._warnings_lock:
            self.warnings[op["id"]] = {
                "op_id": op["id"],
                "op_type": op["op_type"],
                "retry_count": op["retry_count"],
                "message": "still retrying; the server has not been reached",
            }

    def current_warnings(self) -> list:
        queued = {op["id"] for op in self.queue.list()}
        with self._warnings_lock:
            for op_id in [i for i in self.warnings if i not in queued]:
                del self.warnings[op_id]
            return list(self.warnings.values())

    def drain_loop(self):
        interval = float(self.cfg.get("drain_interval_seconds") or 5)
        while not self.stop.is_set():
            self.wake.clear()
            try:
                self.orchestrator.drain()
            except Exception as ex:
                json_log("error", "agent.drain_failed", error=str(ex))
            self.wake.wait(interval)

    def start(self):
        recovered = self.queue.recover_inflight()
        json_log("info", "agent.started", device_id=self.cfg.get("device_id"), recovered=recovered, pending=self.queue.count())
        targets = [
            ("drain", self.drain_loop, ()),
            ("realtime", self.listener.run, (self.stop,)),
            (
                "stale-sweep",
                run_stale_sweeper,
                (self.reconciler, self.stop, float(self.cfg.get("stale_sweep_interval_seconds") or 30)),
            ),
        ]
        for name, fn, args in targets:
            t = threading.Thread(target=fn, args=args, name=f"pos-agent-{name}", daemon=True)
            t.start()
            self.threads.append(t)

    def shutdown(self):
        self.stop.set()
        self.wake.set()

    def submit(self, op_type: str, payload: dict) -> dict:
        op = self.queue.enqueue(op_type, payload)
        # The drain thread sends it; the UI never waits on the network.
        self.wake.set()
        return op

    def status(self) -> dict:
        return {
            "ok": True,
            "pending": self.queue.count(),
            "rejected": len(self.queue.rejected()),
            "warnings": self.current_warnings(),
            "realtime": self.listener.status(),
            "stale_collections": self.store.stale_collections(COLLECTIONS, self.reconciler.stale_after_seconds),
        }


AGENT: Optional[Agent] = None


def json_response(handler, payload, status=200):
    body = json.dumps(payload, default=str).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json")
    _maybe_send_cors_headers(handler)
    handler.end_headers()
    handler.wfile.write(body)


_DEFAULT_PORTS = {"http": 80, "https": 443}


def _parse_host_header(host_header: str) -> tuple:
    host_header = (host_header or "").strip()
    if not host_header:
        return None, None
    # IPv6: "[::1]:7070"
    if host_header.startswith("["):
        host, _, rest = host_header[1:].partition("]")
        port_part = rest[1:] if rest.startswith(":") else ""
    elif ":" in host_header:
        host, _, port_part = host_header.rpartition(":")
    else:
        host, port_part = host_header, ""
    try:
        return host.lower(), int(port_part) if port_part else None
    except ValueError:
        return None, None


def _origin_is_trusted(origin: str, host_header: str) -> bool:
    """
    Local HTTP agents are a classic target for browser-based attacks.
    Accept a browser Origin only when it is loopback or same-origin as Host
    (same host and same port; a missing port means the scheme default).
    """
    u = urlparse((origin or "").strip())
    if not u.hostname or u.scheme not in _DEFAULT_PORTS:
        return False
    if u.hostname in {"localhost", "127.0.0.1", "::1"}:
        return True
    try:
        origin_port = u.port or _DEFAULT_PORTS[u.scheme]
    except ValueError:
        return False
    host, host_port = _parse_host_header(host_header)
    if not host or u.hostname != host:
        return False
    return origin_port == (host_port or _DEFAULT_PORTS[u.scheme])


def _reject_if_disallowed_origin(handler) -> bool:
    origin = (handler.headers.get("Origin") or "").strip()
    if not origin or _origin_is_trusted(origin, handler.headers.get("Host") or ""):
        return False
    json_response(handler, {"error": "forbidden"}, status=403)
    return True


def _maybe_send_cors_headers(handler):
    origin = (handler.headers.get("Origin") or "").strip()
    if not origin or not _origin_is_trusted(origin, handler.headers.get("Host") or ""):
        return
    handler.send_header("Access-Control-Allow-Origin", origin)
    handler.send_header("Vary", "Origin")
    handler.send_header("Access-Control-Allow-Headers", "Content-Type")
    handler.send_header("Access-Control-Allow-Methods", "GET,POST,OPTIONS")


class Handler(BaseHTTPRequestHandler):
    def log_message(self, fmt, *args):
        json_log("info", "agent.http", client_ip=self.client_address[0] if self.client_address else None, message=fmt % args)

    def do_OPTIONS(self):
        if _reject_if_disallowed_origin(self):
            return
        self.send_response(200)
        _maybe_send_cors_headers(self)
        self.end_headers()

    def do_GET(self):
        parsed = urlparse(self.path)
        if _reject_if_disallowed_origin(self):
            return
        self.handle_api_get(parsed)

    def do_POST(self):
        parsed = urlparse(self.path)
        if _reject_if_disallowed_origin(self):
            return
        try:
            data = self.read_json()
        except ValueError:
            json_response(self, {"error": "invalid json"}, status=400)
            return
        self.handle_api_post(parsed, data)

    def read_json(self):
        length = int(self.headers.get("Content-Length", 0))
        if length == 0:
            return {}
        raw = self.rfile.read(length).decode("utf-8")
        return json.loads(raw)

    def handle_api_get(self, parsed):
        agent = AGENT
        parts = [unquote(p) for p in parsed.path.strip("/").split("/")]
        if parsed.path == "/api/health":
            json_response(self, agent.status())
            return
        if parsed.path == "/api/outbox":
            json_response(self, {"operations": agent.queue.list()})
            return
        if parsed.path == "/api/outbox/rejected":
            json_response(self, {"operations": agent.queue.rejected()})
            return
        # /api/data/{collection}[/{id}] reads the local cache, never the network.
        if len(parts) in {3, 4} and parts[:2] == ["api", "data"]:
            collection = parts[2]
            if collection not in COLLECTIONS:
                json_response(self, {"error": "unknown collection"}, status=404)
                return
            if len(parts) == 4:
                item = agent.store.get_by_id(collection, parts[3])
                if item is None:
                    json_response(self, {"error": "not found"}, status=404)
                    return
                json_response(self, {"item": item})
                return
            meta = agent.store.get_meta(collection) or {}
            json_response(
                self,
                {
                    "items": agent.store.get_all(collection),
                    "last_updated": meta.get("last_updated"),
                    "stale": agent.store.is_stale(collection, agent.reconciler.stale_after_seconds),
                    "collection": collection,
                },
            )
            return
        json_response(self, {"error": "not found"}, status=404)

    def handle_api_post(self, parsed, data):
        agent = AGENT
        parts = [unquote(p) for p in parsed.path.strip("/").split("/")]
        op_type = WRITE_ROUTES.get(parsed.path)
        if op_type is None and len(parts) == 4 and parts[:2] == ["api", "coworking-sessions"] and parts[3] == "close":
            op_type = "session.close"
            data = {**data, "session_id": parts[2]}
        if op_type:
            if not isinstance(data, dict):
                json_response(self, {"error": "payload must be an object"}, status=400)
                return
            try:
                op = agent.submit(op_type, data)
            except (KeyError, ValueError) as ex:
                json_response(self, {"error": str(ex)}, status=400)
                return
            json_response(self, {"queued": True, "operation": op}, status=202)
            return
        # /api/outbox/{id}/cancel
        if len(parts) == 4 and parts[:2] == ["api", "outbox"] and parts[3] == "cancel":
            try:
                op_id = int(parts[2])
            except ValueError:
                json_response(self, {"error": "invalid id"}, status=400)
                return
            try:
                cancelled = agent.queue.cancel(op_id)
            except OperationAlreadySent as ex:
                json_response(self, {"error": str(ex)}, status=409)
                return
            if not cancelled:
                json_response(self, {"error": "not found"}, status=404)
                return
            json_response(self, {"ok": True})
            return
        if parsed.path == "/api/sync/drain":
            summary = agent.orchestrator.drain()
            json_response(self, {"ok": True, "summary": summary, "pending": agent.queue.count()})
            return
        if parsed.path == "/api/sync/refresh":
            counts = agent.reconciler.full_refresh()
            json_response(self, {"ok": True, "counts": counts})
            return
        json_response(self, {"error": "not found"}, status=404)


def main():
    global DB_PATH, CONFIG_PATH, AGENT
    parser = argparse.ArgumentParser()
    parser.add_argument("--init-db", action="store_true", help="Initialize local SQLite schema and exit")
    parser.add_argument(
        "--db",
        default=os.environ.get("POS_DB_PATH", DB_PATH),
        help="SQLite DB path (default: pos_desktop/pos.sqlite).",
    )
    parser.add_argument(
        "--config",
        default=os.environ.get("POS_CONFIG_PATH", CONFIG_PATH),
        help="Config JSON path (default: pos_desktop/config.json).",
    )
    parser.add_argument(
        "--host",
        default=os.environ.get("POS_HOST", "127.0.0.1"),
        help="HTTP host to bind (default: 127.0.0.1). Use 0.0.0.0 only if you explicitly want LAN exposure.",
    )
    parser.add_argument("--port", type=int, default=int(os.environ.get("POS_PORT", "7070")), help="HTTP port (default: 7070)")
    args = parser.parse_args()

    DB_PATH = os.path.abspath(args.db)
    CONFIG_PATH = os.path.abspath(args.config)

    init_db(DB_PATH)
    if args.init_db:
        print("ok")
        return

    AGENT = Agent(load_config(), DB_PATH)
    AGENT.start()
    server = ThreadingHTTPServer((args.host, args.port), Handler)
    public_host = "localhost" if args.host in {"127.0.0.1", "localhost"} else args.host
    print(f"POS Agent running on http://{public_host}:{args.port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        AGENT.shutdown()
        server.server_close()


if __name__ == "__main__":
    main()
