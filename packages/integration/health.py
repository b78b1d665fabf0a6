import time
from typing import Any, Callable, Dict, Optional

from sqlalchemy import text


class ServiceClock:
    """Process start time, created once at startup and passed to whoever needs uptime."""

    def __init__(self, started_at: Optional[float] = None, now: Callable[[], float] = time.monotonic):
        self._now = now
        self.started_at = started_at if started_at is not None else now()

    def uptime(self) -> float:
        return max(0.0, self._now() - self.started_at)


class HealthService:
    def __init__(self, service_name: str, version: str, clock: ServiceClock, session_factory=None):
        self.service_name = service_name
        self.version = version
        self.clock = clock
        self.session_factory = session_factory

    def _check_db(self) -> Dict[str, Any]:
        if self.session_factory is None:
            return {"status": "skipped"}
        try:
            with self.session_factory() as db:
                db.execute(text("SELECT 1"))
            return {"status": "ok"}
        except Exception as e:
            return {"status": "error", "error": str(e)}

    def report(self) -> Dict[str, Any]:
        checks = {"database": self._check_db()}
        ok = all(c["status"] != "error" for c in checks.values())
        return {
            "ok": ok,
            "service": self.service_name,
            "version": self.version,
            "uptime_seconds": round(self.clock.uptime(), 3),
            "checks": checks,
        }
