"""
Seed a dev channel integration so the messaging gateway has something to send through:
- WhatsApp (Meta) channel for the given tenant, token encrypted by the vault
- Telegram channel when TELEGRAM_BOT_TOKEN is set

Usage:
  python scripts/seed_channels.py [tenant_id]

Respects DATABASE_URL and ENCRYPTION_KEY from environment.
"""
import os
import sys

from packages.integration.config import Settings
from packages.integration.db import init_schema
from packages.integration.domain import ChannelIntegration, Platform, Provider
from packages.integration.errors import NotFound
from packages.integration.registry import ChannelRegistry
from packages.integration.vault import CredentialVault


def get_or_create(registry, tenant_id: str, platform: Platform, provider: Provider, token: str, config: dict):
    try:
        existing = registry.get_by_platform_and_tenant(platform, tenant_id)
        print(f"{platform.value} channel already exists: {existing.id}")
        return existing
    except NotFound:
        pass
    created = registry.create(ChannelIntegration(
        tenant_id=tenant_id, platform=platform, provider=provider, access_token=token, config=config,
    ))
    print(f"created {platform.value} channel: {created.id}")
    return created


def main():
    tenant_id = sys.argv[1] if len(sys.argv) > 1 else "dev-tenant"
    settings = Settings.from_env()
    init_schema()
    registry = ChannelRegistry(CredentialVault.from_settings(settings))
    get_or_create(
        registry, tenant_id, Platform.whatsapp, Provider.meta,
        os.getenv("WHATSAPP_TOKEN", "dev-token"),
        {"phone_number_id": os.getenv("WHATSAPP_PHONE_NUMBER_ID", "000000000000")},
    )
    bot_token = os.getenv("TELEGRAM_BOT_TOKEN")
    if bot_token:
        get_or_create(registry, tenant_id, Platform.telegram, Provider.custom, bot_token, {"bot_token": bot_token})


if __name__ == "__main__":
    main()
