import logging

from packages.integration.dispatcher import OutboundDispatcher
from packages.integration.domain import ChannelIntegration, MessageContent, Platform, Provider
from packages.integration.errors import ProviderUnavailable
from packages.integration.logs import get_logger
from packages.integration.registry import OutboundLogStore


class DownProvider:
    def send(self, integration, recipient, content):
        raise ProviderUnavailable("telegram provider timed out")


def test_get_logger_attaches_json_handler_once(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    first = get_logger("gateway-test")
    second = get_logger("gateway-test")
    assert first is second
    assert len([h for h in first.handlers if getattr(h, "_gateway_json", False)]) == 1
    assert first.level == logging.DEBUG


def test_failed_send_logs_channel_id(registry, caplog):
    ch = registry.create(ChannelIntegration(tenant_id="t-1", platform=Platform.telegram, provider=Provider.custom,
                                            config={"bot_token": "T"}))
    dispatcher = OutboundDispatcher(registry, OutboundLogStore(), DownProvider())
    caplog.clear()
    caplog.set_level("INFO")
    dispatcher.send(ch, "1", MessageContent(type="text", text="x"))

    found = [r for r in caplog.records if getattr(r, "channel_id", None) == ch.id and r.levelname == "ERROR"]
    assert found, f"expected an error record for {ch.id}, got: {[r.getMessage() for r in caplog.records]}"
    assert "timed out" in found[0].getMessage()
