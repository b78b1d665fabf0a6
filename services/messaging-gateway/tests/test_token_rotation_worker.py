import asyncio
import importlib.util
from datetime import timedelta
from pathlib import Path

from packages.integration.config import RotationPolicy, Settings
from packages.integration.domain import ChannelIntegration, Platform, Provider, utcnow
from packages.integration.rotation import ScanReport

# Load module by path; the service directory name is not importable
root = Path(__file__).resolve().parents[1]
spec = importlib.util.spec_from_file_location("token_rotation_worker", str(root / "worker" / "token_rotation_worker.py"))
worker = importlib.util.module_from_spec(spec)
spec.loader.exec_module(worker)


class DummyRedis:
    def __init__(self):
        self.entries = []

    def xadd(self, stream, fields):
        self.entries.append((stream, fields))


class FixedService:
    def scan(self):
        return ScanReport(scanned=3, warned=1)


def test_run_once_returns_report():
    report = asyncio.run(worker.run(Settings(), once=True, service=FixedService()))
    assert (report.scanned, report.warned) == (3, 1)


def test_build_service_scans_real_registry(database, registry):
    registry.create(ChannelIntegration(
        tenant_id="t-1", platform=Platform.messenger, provider=Provider.meta, access_token="PAGE",
        token_expiry=utcnow() + timedelta(days=1),
    ))
    redis = DummyRedis()
    settings = Settings(encryption_key="k" * 32, rotation=RotationPolicy(warning_days=7))
    report = asyncio.run(worker.run(settings, once=True, service=worker.build_service(settings, redis=redis)))
    assert report.warned == 1
    assert redis.entries[0][1]["type"] == "token.expiring"
