import http.client

import pytest

from pos_desktop import transport
from pos_desktop.transport import ApiClient, TransportError


@pytest.mark.parametrize(
    "error",
    [
        http.client.RemoteDisconnected("Remote end closed connection without response"),
        http.client.BadStatusLine("garbage"),
        http.client.IncompleteRead(b"{", 10),
        ConnectionResetError("reset"),
    ],
)
def test_broken_responses_become_transport_errors(monkeypatch, error):
    def _urlopen(req, timeout=None):
        raise error

    monkeypatch.setattr(transport, "urlopen", _urlopen)
    client = ApiClient("http://sync.local")

    with pytest.raises(TransportError):
        client.send_operation(
            {"target_endpoint": "/orders", "payload": {"order_id": "o-1"}, "idempotency_key": "k-00000001"}
        )
