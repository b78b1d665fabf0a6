from sqlalchemy import Boolean, Column, DateTime, Index, LargeBinary, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import JSON as SAJSON

Base = declarative_base()

# Portable JSON column; JSONB on Postgres via the migrations.
JSONType = SAJSON


class ChannelIntegration(Base):
    __tablename__ = "channel_integrations"
    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    access_token = Column(Text)   # vault ciphertext
    refresh_token = Column(Text)  # vault ciphertext
    webhook_url = Column(String)
    status = Column(String, nullable=False, default="active")  # active|disabled|error
    config = Column(JSONType, default=dict)
    token_expiry = Column(DateTime, nullable=True, index=True)
    last_rotated = Column(DateTime, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    __table_args__ = (Index("ix_channel_integrations_platform_tenant", "platform", "tenant_id"),)


class InboundMessage(Base):
    __tablename__ = "inbound_messages"
    id = Column(String, primary_key=True)
    platform = Column(String, nullable=False, index=True)
    payload = Column(LargeBinary)
    received_at = Column(DateTime)
    processed = Column(Boolean, nullable=False, default=False)


class OutboundMessageLog(Base):
    __tablename__ = "outbound_message_logs"
    id = Column(String, primary_key=True)
    channel_id = Column(String, nullable=False, index=True)
    recipient = Column(String, nullable=False)
    content = Column(JSONType)
    status = Column(String, nullable=False, default="queued")  # queued|sent|failed
    response = Column(JSONType)
    timestamp = Column(DateTime)
