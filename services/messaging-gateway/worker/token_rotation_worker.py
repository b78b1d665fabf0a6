"""Standalone token rotation loop, for deployments that keep it out of the API process.

Usage:
  PYTHONPATH=. python services/messaging-gateway/worker/token_rotation_worker.py [--once]
"""
import argparse
import asyncio
import signal

from redis import Redis

from packages.integration.config import Settings
from packages.integration.logs import get_logger
from packages.integration.registry import ChannelRegistry
from packages.integration.rotation import (
    RedisNotifier,
    TokenRefresher,
    TokenRotationScheduler,
    TokenRotationService,
    TokenValidator,
)
from packages.integration.vault import CredentialVault

logger = get_logger("token_rotation_worker")


def build_service(settings: Settings, redis=None) -> TokenRotationService:
    redis = redis if redis is not None else Redis.from_url(settings.redis_url, decode_responses=True)
    registry = ChannelRegistry(CredentialVault.from_settings(settings))
    return TokenRotationService(
        registry, settings.rotation, RedisNotifier(redis), TokenRefresher(settings), TokenValidator(settings)
    )


async def run(settings: Settings, once: bool = False, service=None):
    service = service or build_service(settings)
    scheduler = TokenRotationScheduler(service, settings.rotation)
    if once:
        report = await scheduler.run_once()
        logger.info("single scan done", extra=report.model_dump())
        return report

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    scheduler.start()
    logger.info("token rotation worker started", extra={"interval": settings.rotation.rotation_interval})
    try:
        await stop.wait()
    finally:
        await scheduler.stop()
        logger.info("token rotation worker stopped")


def main():
    parser = argparse.ArgumentParser(description="Scan channel tokens for expiry and rotate them")
    parser.add_argument("--once", action="store_true", help="run a single scan and exit")
    args = parser.parse_args()
    asyncio.run(run(Settings.from_env("token-rotation-worker"), once=args.once))


if __name__ == "__main__":
    main()
