"""Persistent stores: channel integrations and the inbound/outbound audit logs.

The stores never log; callers log mutations. Updates are conditional
``UPDATE ... WHERE`` statements checked through the affected-row count.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete as sa_delete
from sqlalchemy import select, update as sa_update
from sqlalchemy.exc import SQLAlchemyError

from packages.integration.db import SessionLocal, session_scope
from packages.integration.domain import (
    ChannelIntegration,
    InboundRecord,
    IntegrationStatus,
    MessageStatus,
    OutboundLog,
    Platform,
    as_naive_utc,
    utcnow,
)
from packages.integration.errors import NotFound, PersistenceError
from packages.integration.models import (
    ChannelIntegration as ChannelRow,
    InboundMessage as InboundRow,
    OutboundMessageLog as OutboundRow,
)


class _Store:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or SessionLocal

    def _scope(self):
        return session_scope(self._session_factory)


class ChannelRegistry(_Store):
    def __init__(self, vault, session_factory=None):
        super().__init__(session_factory)
        self.vault = vault

    # tokens cross the storage boundary only as vault ciphertext
    def _seal(self, token: Optional[str]) -> Optional[str]:
        return self.vault.encrypt(token) if token else token

    def _open(self, stored: Optional[str]) -> Optional[str]:
        return self.vault.decrypt(stored) if stored else stored

    def _to_domain(self, row: ChannelRow) -> ChannelIntegration:
        return ChannelIntegration(
            id=row.id,
            tenant_id=row.tenant_id,
            platform=Platform(row.platform),
            provider=row.provider,
            access_token=self._open(row.access_token) or "",
            refresh_token=self._open(row.refresh_token),
            webhook_url=row.webhook_url,
            status=IntegrationStatus(row.status),
            config=dict(row.config or {}),
            token_expiry=row.token_expiry,
            last_rotated=row.last_rotated,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _values(self, integration: ChannelIntegration) -> Dict[str, Any]:
        return {
            "tenant_id": integration.tenant_id,
            "platform": integration.platform.value,
            "provider": integration.provider.value,
            "access_token": self._seal(integration.access_token),
            "refresh_token": self._seal(integration.refresh_token),
            "webhook_url": integration.webhook_url,
            "status": integration.status.value,
            "config": integration.config or {},
            "token_expiry": as_naive_utc(integration.token_expiry),
            "last_rotated": as_naive_utc(integration.last_rotated),
        }

    def create(self, integration: ChannelIntegration) -> ChannelIntegration:
        now = utcnow()
        created = integration.model_copy(update={
            "id": str(uuid.uuid4()),
            "status": IntegrationStatus.active,
            "created_at": now,
            "updated_at": now,
        })
        try:
            with self._scope() as db:
                db.add(ChannelRow(id=created.id, created_at=now, updated_at=now, **self._values(created)))
        except SQLAlchemyError as e:
            raise PersistenceError(f"create channel integration failed: {e}")
        return created

    def _rows(self, stmt, action: str) -> List[ChannelRow]:
        try:
            with self._scope() as db:
                return list(db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"{action} failed: {e}")

    def get_by_id(self, integration_id: str) -> ChannelIntegration:
        rows = self._rows(select(ChannelRow).where(ChannelRow.id == integration_id), "load channel integration")
        if not rows:
            raise NotFound(f"channel integration {integration_id} not found")
        return self._to_domain(rows[0])

    def get_by_tenant(self, tenant_id: str) -> List[ChannelIntegration]:
        rows = self._rows(
            select(ChannelRow).where(ChannelRow.tenant_id == tenant_id).order_by(ChannelRow.created_at),
            "list tenant integrations",
        )
        return [self._to_domain(r) for r in rows]

    def get_by_platform_and_tenant(self, platform: Platform, tenant_id: str) -> ChannelIntegration:
        # Active rows first, oldest wins; that row is the canonical sender.
        rows = self._rows(
            select(ChannelRow)
            .where(ChannelRow.platform == Platform(platform).value, ChannelRow.tenant_id == tenant_id)
            .order_by(ChannelRow.created_at),
            "load platform integration",
        )
        if not rows:
            raise NotFound(f"no {Platform(platform).value} integration for tenant {tenant_id}")
        active = [r for r in rows if r.status == IntegrationStatus.active.value]
        return self._to_domain((active or rows)[0])

    def list_active(self, platform: Optional[Platform] = None) -> List[ChannelIntegration]:
        stmt = select(ChannelRow).where(ChannelRow.status == IntegrationStatus.active.value)
        if platform is not None:
            stmt = stmt.where(ChannelRow.platform == Platform(platform).value)
        return [self._to_domain(r) for r in self._rows(stmt.order_by(ChannelRow.created_at), "list active integrations")]

    def list_expiring_ids(self, before: datetime) -> List[str]:
        """Ids of active integrations whose token expires at or before ``before``.

        Only ids are returned so a caller can load (and decrypt) each row on
        its own and keep going when one credential is corrupt.
        """
        stmt = (
            select(ChannelRow.id)
            .where(
                ChannelRow.status == IntegrationStatus.active.value,
                ChannelRow.token_expiry.isnot(None),
                ChannelRow.token_expiry <= as_naive_utc(before),
            )
            .order_by(ChannelRow.token_expiry)
        )
        return self._rows(stmt, "list expiring integrations")

    def update(self, integration: ChannelIntegration) -> ChannelIntegration:
        if not integration.id:
            raise NotFound("channel integration without id")
        now = utcnow()
        try:
            with self._scope() as db:
                res = db.execute(
                    sa_update(ChannelRow)
                    .where(ChannelRow.id == integration.id)
                    .values(updated_at=now, **self._values(integration))
                )
                affected = res.rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"update channel integration failed: {e}")
        if affected == 0:
            raise NotFound(f"channel integration {integration.id} not found")
        return integration.model_copy(update={"updated_at": now})

    def set_status(self, integration_id: str, status: IntegrationStatus) -> None:
        try:
            with self._scope() as db:
                affected = db.execute(
                    sa_update(ChannelRow)
                    .where(ChannelRow.id == integration_id)
                    .values(status=IntegrationStatus(status).value, updated_at=utcnow())
                ).rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"set channel status failed: {e}")
        if affected == 0:
            raise NotFound(f"channel integration {integration_id} not found")

    def delete(self, integration_id: str) -> None:
        try:
            with self._scope() as db:
                affected = db.execute(sa_delete(ChannelRow).where(ChannelRow.id == integration_id)).rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"delete channel integration failed: {e}")
        if affected == 0:
            raise NotFound(f"channel integration {integration_id} not found")


class InboundMessageStore(_Store):
    def record(self, platform: Platform, payload: bytes) -> InboundRecord:
        rec = InboundRecord(
            id=str(uuid.uuid4()), platform=Platform(platform), payload=payload,
            received_at=utcnow(), processed=False,
        )
        try:
            with self._scope() as db:
                db.add(InboundRow(
                    id=rec.id, platform=rec.platform.value, payload=payload,
                    received_at=rec.received_at, processed=False,
                ))
        except SQLAlchemyError as e:
            raise PersistenceError(f"store inbound message failed: {e}")
        return rec

    def mark_processed(self, inbound_id: str) -> None:
        try:
            with self._scope() as db:
                affected = db.execute(
                    sa_update(InboundRow).where(InboundRow.id == inbound_id).values(processed=True)
                ).rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"mark inbound processed failed: {e}")
        if affected == 0:
            raise NotFound(f"inbound message {inbound_id} not found")

    def list(self, platform: Optional[Platform] = None, limit: int = 50, offset: int = 0) -> List[InboundRecord]:
        stmt = select(InboundRow)
        if platform is not None:
            stmt = stmt.where(InboundRow.platform == Platform(platform).value)
        stmt = stmt.order_by(InboundRow.received_at.desc()).limit(limit).offset(offset)
        with self._scope() as db:
            return [self._to_domain(r) for r in db.execute(stmt).scalars().all()]

    def get_unprocessed(self, limit: int = 100) -> List[InboundRecord]:
        stmt = select(InboundRow).where(InboundRow.processed.is_(False)).order_by(InboundRow.received_at).limit(limit)
        with self._scope() as db:
            return [self._to_domain(r) for r in db.execute(stmt).scalars().all()]

    @staticmethod
    def _to_domain(row: InboundRow) -> InboundRecord:
        return InboundRecord(
            id=row.id, platform=Platform(row.platform), payload=row.payload or b"",
            received_at=row.received_at, processed=bool(row.processed),
        )


class OutboundLogStore(_Store):
    def create_queued(self, channel_id: str, recipient: str, content: Dict[str, Any]) -> OutboundLog:
        log = OutboundLog(
            id=str(uuid.uuid4()), channel_id=channel_id, recipient=recipient,
            content=content, status=MessageStatus.queued, timestamp=utcnow(),
        )
        try:
            with self._scope() as db:
                db.add(OutboundRow(
                    id=log.id, channel_id=channel_id, recipient=recipient, content=content,
                    status=MessageStatus.queued.value, timestamp=log.timestamp,
                ))
        except SQLAlchemyError as e:
            raise PersistenceError(f"create outbound log failed: {e}")
        return log

    def finalize(self, log_id: str, status: MessageStatus, response: Dict[str, Any]) -> None:
        """Move a queued log to its terminal status; a second call is an error."""
        try:
            with self._scope() as db:
                affected = db.execute(
                    sa_update(OutboundRow)
                    .where(OutboundRow.id == log_id, OutboundRow.status == MessageStatus.queued.value)
                    .values(status=MessageStatus(status).value, response=response)
                ).rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"finalize outbound log failed: {e}")
        if affected == 0:
            raise PersistenceError(f"outbound log {log_id} missing or already finalized")

    def get(self, log_id: str) -> OutboundLog:
        with self._scope() as db:
            row = db.get(OutboundRow, log_id)
            if row is None:
                raise NotFound(f"outbound log {log_id} not found")
            return self._to_domain(row)

    def list(self, platform: Optional[Platform] = None, limit: int = 50, offset: int = 0,
             tenant_id: Optional[str] = None) -> List[OutboundLog]:
        stmt = select(OutboundRow)
        if platform is not None or tenant_id is not None:
            stmt = stmt.join(ChannelRow, ChannelRow.id == OutboundRow.channel_id)
            if platform is not None:
                stmt = stmt.where(ChannelRow.platform == Platform(platform).value)
            if tenant_id is not None:
                stmt = stmt.where(ChannelRow.tenant_id == tenant_id)
        stmt = stmt.order_by(OutboundRow.timestamp.desc()).limit(limit).offset(offset)
        with self._scope() as db:
            return [self._to_domain(r) for r in db.execute(stmt).scalars().all()]

    def get_by_channel_id(self, channel_id: str, limit: int = 50, offset: int = 0) -> List[OutboundLog]:
        stmt = (
            select(OutboundRow).where(OutboundRow.channel_id == channel_id)
            .order_by(OutboundRow.timestamp.desc()).limit(limit).offset(offset)
        )
        with self._scope() as db:
            return [self._to_domain(r) for r in db.execute(stmt).scalars().all()]

    def get_by_recipient(self, platform: Platform, recipient: str, limit: int = 1000) -> List[OutboundLog]:
        """Logs sent to ``recipient`` through any channel of ``platform``, newest first."""
        stmt = (
            select(OutboundRow)
            .join(ChannelRow, ChannelRow.id == OutboundRow.channel_id)
            .where(OutboundRow.recipient == recipient, ChannelRow.platform == Platform(platform).value)
            .order_by(OutboundRow.timestamp.desc()).limit(limit)
        )
        with self._scope() as db:
            return [self._to_domain(r) for r in db.execute(stmt).scalars().all()]

    def get_by_status(self, status: MessageStatus, limit: int = 50) -> List[OutboundLog]:
        stmt = (
            select(OutboundRow).where(OutboundRow.status == MessageStatus(status).value)
            .order_by(OutboundRow.timestamp).limit(limit)
        )
        with self._scope() as db:
            return [self._to_domain(r) for r in db.execute(stmt).scalars().all()]

    @staticmethod
    def _to_domain(row: OutboundRow) -> OutboundLog:
        return OutboundLog(
            id=row.id, channel_id=row.channel_id, recipient=row.recipient,
            content=row.content or {}, status=MessageStatus(row.status),
            response=row.response, timestamp=row.timestamp,
        )
