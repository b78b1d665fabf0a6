"""
Encrypt channel tokens that were stored before the vault existed.

Rows whose access_token/refresh_token already look like vault ciphertext are
skipped. The check is a heuristic, so run with --dry-run first and review
the output.

Usage:
  python scripts/encrypt_tokens.py [--dry-run]

Respects DATABASE_URL and ENCRYPTION_KEY from environment.
"""
import argparse

from sqlalchemy import select, update

from packages.integration.config import Settings
from packages.integration.db import session_scope
from packages.integration.models import ChannelIntegration
from packages.integration.vault import CredentialVault


def migrate(vault: CredentialVault, dry_run: bool = False) -> int:
    changed = 0
    with session_scope() as db:
        rows = db.execute(
            select(ChannelIntegration.id, ChannelIntegration.access_token, ChannelIntegration.refresh_token)
        ).all()
        for row in rows:
            values = {}
            for column in ("access_token", "refresh_token"):
                current = getattr(row, column)
                if current and not vault.is_encrypted(current):
                    values[column] = vault.encrypt(current)
            if not values:
                continue
            changed += 1
            print(f"{row.id}: encrypting {', '.join(sorted(values))}")
            if not dry_run:
                db.execute(update(ChannelIntegration).where(ChannelIntegration.id == row.id).values(**values))
        if dry_run:
            db.rollback()
    return changed


def main():
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    vault = CredentialVault.from_settings(Settings.from_env())
    n = migrate(vault, dry_run=args.dry_run)
    print(f"{n} channel(s) would be updated" if args.dry_run else f"{n} channel(s) updated")


if __name__ == "__main__":
    main()
