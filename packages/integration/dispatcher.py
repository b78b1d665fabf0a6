from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict

from packages.integration.domain import (
    BroadcastItem,
    BroadcastResult,
    ChannelIntegration,
    IntegrationStatus,
    MessageContent,
    MessageStatus,
    OutboundLog,
    Platform,
    utcnow,
)
from packages.integration.errors import ChannelInactive, IntegrationError, NotFound, PersistenceError
from packages.integration.logs import get_logger
from packages.integration.metrics import AUDIT_PERSISTENCE_FAILURES, OUTBOUND_MESSAGES

logger = get_logger("dispatcher")


class DispatchResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    log: OutboundLog
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class OutboundDispatcher:
    def __init__(self, registry, outbound_logs, provider_client):
        self.registry = registry
        self.logs = outbound_logs
        self.providers = provider_client

    def send(self, integration: ChannelIntegration, recipient: str, content: MessageContent) -> DispatchResult:
        """Send one message and finalize its audit log exactly once.

        Raises ``ChannelInactive`` before anything is written when the
        channel is not active; every other failure is returned on the
        result next to the failed log entry.
        """
        if integration.status != IntegrationStatus.active:
            raise ChannelInactive(f"channel {integration.id} is {integration.status.value}")
        body = content.model_dump(exclude_none=True)
        try:
            log = self.logs.create_queued(integration.id, recipient, body)
        except PersistenceError:
            AUDIT_PERSISTENCE_FAILURES.labels(table="outbound_message_logs").inc()
            logger.exception("outbound log create failed", extra={"channel_id": integration.id})
            log = None

        error = None
        try:
            response = self.providers.send(integration, recipient, content)
            status = MessageStatus.sent
        except IntegrationError as e:
            error = e
            status = MessageStatus.failed
            response = {"error": e.message}
            if e.data:
                response.update(e.data)
        except Exception as e:
            # the queued log still gets a terminal status
            logger.exception("unexpected provider failure", extra={"channel_id": integration.id})
            error = IntegrationError(f"unexpected provider failure: {e.__class__.__name__}")
            status = MessageStatus.failed
            response = {"error": error.message}

        if log is not None:
            try:
                self.logs.finalize(log.id, status, response)
            except PersistenceError:
                AUDIT_PERSISTENCE_FAILURES.labels(table="outbound_message_logs").inc()
                logger.exception("outbound log finalize failed", extra={"log_id": log.id})
            log = log.model_copy(update={"status": status, "response": response})
        else:
            log = OutboundLog(
                id="", channel_id=integration.id, recipient=recipient, content=body,
                status=status, response=response, timestamp=utcnow(),
            )

        OUTBOUND_MESSAGES.labels(platform=integration.platform.value, status=status.value).inc()
        if error is None:
            logger.info("message sent", extra={"channel_id": integration.id, "log_id": log.id,
                                               "platform": integration.platform.value})
        else:
            logger.error("message send failed: %s", error.message,
                         extra={"channel_id": integration.id, "log_id": log.id,
                                "platform": integration.platform.value})
        return DispatchResult(log=log, error=error)

    def send_by_channel_id(self, channel_id: str, recipient: str, content: MessageContent) -> DispatchResult:
        return self.send(self.registry.get_by_id(channel_id), recipient, content)

    def broadcast(self, tenant_id: str, platforms: Iterable[Platform], recipients: Iterable[str],
                  content: MessageContent) -> BroadcastResult:
        recipients = list(recipients)
        result = BroadcastResult()
        for platform in platforms:
            platform = Platform(platform)
            try:
                integration = self.registry.get_by_platform_and_tenant(platform, tenant_id)
            except NotFound as e:
                for r in recipients:
                    result.results.append(BroadcastItem(platform=platform, recipient=r, success=False, error=e.message))
                    result.total_failed += 1
                continue
            for r in recipients:
                try:
                    sent = self.send(integration, r, content)
                except ChannelInactive as e:
                    item = BroadcastItem(platform=platform, recipient=r, success=False, error=e.message)
                else:
                    item = BroadcastItem(
                        platform=platform, recipient=r, success=sent.ok,
                        error=sent.error.message if sent.error else None,
                        message_id=sent.log.id or None,
                    )
                result.results.append(item)
                if item.success:
                    result.total_sent += 1
                else:
                    result.total_failed += 1
        return result
