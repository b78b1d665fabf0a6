import json

import httpx
import pytest

from packages.integration.domain import MessageContent, NormalizedMessage, Platform
from packages.integration.errors import ForwardingError
from packages.integration.ingress import HttpForwarder


def _message(**kw):
    base = dict(platform=Platform.telegram, sender="1", recipient="2",
                content=MessageContent(type="text", text="hi"), timestamp=1700000000,
                message_id="42", raw_payload={"message": {"text": "hi"}})
    base.update(kw)
    return NormalizedMessage(**base)


def test_forward_posts_canonical_body():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(202)

    fwd = HttpForwarder("http://messaging:8081/", client=httpx.Client(transport=httpx.MockTransport(handler)))
    fwd.forward(_message(tenant_id="t-1"))
    req = seen[0]
    assert str(req.url) == "http://messaging:8081/api/v1/webhooks/inbound"
    assert req.headers["content-type"] == "application/json"
    assert req.headers["user-agent"].startswith("integration-gateway/")
    body = json.loads(req.content)
    assert body == {
        "platform": "telegram", "sender": "1", "recipient": "2",
        "content": {"type": "text", "text": "hi"}, "timestamp": 1700000000,
        "message_id": "42", "raw_payload": {"message": {"text": "hi"}}, "tenant_id": "t-1",
    }


def test_user_agent_carries_service_version():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    HttpForwarder("http://messaging", client=client, version="2.3.1").forward(_message())
    assert seen[0].headers["user-agent"] == "integration-gateway/2.3.1"


def test_non_2xx_is_forwarding_error():
    client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
    with pytest.raises(ForwardingError) as exc:
        HttpForwarder("http://messaging", client=client).forward(_message())
    assert exc.value.data["status_code"] == 500


def test_transport_error_is_forwarding_error(monkeypatch):
    def fake_post(*a, **kw):
        raise httpx.ConnectError("refused")

    monkeypatch.setattr(httpx, "post", fake_post)
    with pytest.raises(ForwardingError):
        HttpForwarder("http://messaging").forward(_message())


def test_module_level_httpx_post_is_used_without_client(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, timeout))
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)
    HttpForwarder("http://messaging", timeout=10).forward(_message())
    assert calls == [("http://messaging/api/v1/webhooks/inbound", 10)]


def test_missing_url_skips_forward(monkeypatch):
    def fail(*a, **kw):
        raise AssertionError("should not post")

    monkeypatch.setattr(httpx, "post", fail)
    HttpForwarder("").forward(_message())
