import http.client
import json
import socket
from dataclasses import dataclass, field
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAYED_HEADER = "Idempotent-Replayed"
DEFAULT_TIMEOUT_SECONDS = 10.0


class TransportError(Exception):
    """No HTTP response was received (DNS, refused, reset, timeout)."""


@dataclass
class HttpResponse:
    status: int
    body: Optional[dict]
    headers: dict = field(default_factory=dict)

    @property
    def replayed(self) -> bool:
        return str(self.headers.get(REPLAYED_HEADER.lower()) or "").lower() == "true"


def device_headers(cfg: dict) -> dict:
    return {
        "X-Device-Id": cfg.get("device_id") or "",
        "X-Device-Token": cfg.get("device_token") or "",
    }


def _decode(raw: bytes) -> Optional[dict]:
    if not raw:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except ValueError:
        return {"detail": raw.decode("utf-8", errors="replace")[:500]}


class ApiClient:
    def __init__(self, base_url: str, headers: Optional[dict] = None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.base_url = (base_url or "").rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = timeout

    def url(self, path: str, query: Optional[dict] = None) -> str:
        url = f"{self.base_url}{path}"
        q = {k: v for k, v in (query or {}).items() if v is not None}
        return f"{url}?{urlencode(q)}" if q else url

    def request(self, method: str, path: str, payload=None, headers: Optional[dict] = None, query: Optional[dict] = None) -> HttpResponse:
        """Any HTTP status comes back as a response; only a missing response raises TransportError."""
        data = json.dumps(payload, default=str).encode("utf-8") if payload is not None else None
        req = Request(self.url(path, query), data=data, headers={**self.headers, **(headers or {})}, method=method)
        if data is not None:
            req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                return HttpResponse(resp.status, _decode(resp.read()), {k.lower(): v for k, v in resp.headers.items()})
        except HTTPError as ex:
            try:
                body = _decode(ex.read() if ex.fp is not None else b"")
            except (http.client.HTTPException, OSError):
                # The status line arrived; a truncated error body does not change the outcome.
                body = {}
            finally:
                ex.close()
            return HttpResponse(ex.code, body, {k.lower(): v for k, v in (ex.headers or {}).items()})
        except (URLError, http.client.HTTPException, socket.timeout, OSError) as ex:
            raise TransportError(str(getattr(ex, "reason", ex))) from ex

    def send_operation(self, op: dict) -> HttpResponse:
        return self.request(
            op.get("method") or "POST",
            op["target_endpoint"],
            payload=op["payload"],
            headers={IDEMPOTENCY_HEADER: op["idempotency_key"]},
        )

    def get_json(self, path: str, query: Optional[dict] = None) -> HttpResponse:
        return self.request("GET", path, query=query)

    def open_stream(self, path: str, timeout: float):
        """Raw response for a long-lived text/event-stream; caller closes it."""
        req = Request(self.url(path), headers={**self.headers, "Accept": "text/event-stream"}, method="GET")
        try:
            return urlopen(req, timeout=timeout)
        except HTTPError as ex:
            ex.close()
            raise TransportError(f"stream rejected: HTTP {ex.code}") from ex
        except (URLError, http.client.HTTPException, socket.timeout, OSError) as ex:
            raise TransportError(str(getattr(ex, "reason", ex))) from ex
