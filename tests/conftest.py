"""
Test Fixtures and Configuration
-------------------------------
Shared fixtures: settings pointing at temporary directories, a manual clock
and scheduler that advance virtual time, an in-memory SQLite engine for the
baseline store, and factories for snapshots and alerts.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import pytest
from sqlalchemy.pool import StaticPool

from driftguard.core.alerts.manager import AlertManager
from driftguard.core.alerts.notifications import NotificationRouter
from driftguard.core.alerts.remediation import ResponseActionExecutor
from driftguard.core.alerts.types import (
    AlertCategory,
    AlertCreate,
    AlertMetadata,
    ChannelType,
    NotificationChannel,
)
from driftguard.core.audit.ledger import AuditLedger
from driftguard.core.audit.storage import AuditStorage
from driftguard.core.config import Settings
from driftguard.core.database import build_engine, build_session_factory, create_db_and_tables
from driftguard.core.drift.types import (
    ConfigurationSnapshot,
    FileRecord,
    SecretReference,
    ServiceDescriptor,
    Severity,
    SystemDescriptor,
)
from driftguard.core.scheduler import Scheduler, SchedulerStatus

logger = logging.getLogger(__name__)

START_TIME = datetime(2025, 3, 3, 10, 0, tzinfo=timezone.utc)  # a Monday


class ManualClock:
    """Clock that only moves when told to"""

    def __init__(self, start: datetime = START_TIME):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class ManualScheduler(Scheduler):
    """
    Scheduler whose delayed calls fire only when virtual time is advanced.

    Periodic jobs are recorded and run on demand with ``run_job``.
    """

    def __init__(self, clock: ManualClock):
        super().__init__(clock=clock)
        self.manual_clock = clock
        self.delayed: List[Tuple[datetime, int, Callable[..., Awaitable[Any]], tuple, str]] = []
        self.periodic: Dict[str, Tuple[float, Callable[[], Awaitable[Any]]]] = {}
        self._sequence = 0

    def every(self, job_name, interval_seconds, job_func):
        if not self.running:
            return None
        self.periodic[job_name] = (interval_seconds, job_func)
        return None

    def call_later(self, delay_seconds, func, *args, job_name=None):
        if not self.running:
            return None
        self._sequence += 1
        name = job_name or getattr(func, "__name__", "delayed_call")
        due = self.now() + timedelta(seconds=delay_seconds)
        self.delayed.append((due, self._sequence, func, args, name))
        return name

    async def stop(self) -> None:
        self.delayed.clear()
        self.periodic.clear()
        self.status = SchedulerStatus.STOPPED

    async def run_job(self, job_name: str) -> Any:
        _, job_func = self.periodic[job_name]
        return await job_func()

    async def advance(self, **kwargs) -> None:
        """Move virtual time forward, firing due calls in order"""
        target = self.now() + timedelta(**kwargs)
        while True:
            due = [call for call in self.delayed if call[0] <= target]
            if not due:
                break
            call = min(due, key=lambda c: (c[0], c[1]))
            self.delayed.remove(call)
            when, _, func, args, name = call
            self.manual_clock.set(when)
            try:
                await func(*args)
            except Exception as e:
                logger.exception(f"Delayed call {name} failed: {str(e)}")
        self.manual_clock.set(target)


# ========== SETTINGS AND INFRASTRUCTURE ========== #

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated to a temporary directory"""
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL="sqlite:///:memory:",
        DRIFT_ROOT_DIR=str(tmp_path / "config"),
        DRIFT_WATCHED_PATHS=[".env", "config/app.json"],
        AUDIT_LOG_DIR=str(tmp_path / "audit"),
        AUDIT_SECRET_KEY="test-secret",
        AUDIT_BATCH_SIZE=100,
        AUDIT_FLUSH_INTERVAL=3600,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock: ManualClock) -> ManualScheduler:
    scheduler = ManualScheduler(clock)
    scheduler.start()
    return scheduler


@pytest.fixture
def storage(settings: Settings) -> AuditStorage:
    return AuditStorage(settings.AUDIT_LOG_DIR)


@pytest.fixture
async def ledger(settings: Settings, storage: AuditStorage, clock: ManualClock):
    ledger = AuditLedger(settings, storage=storage, clock=clock)
    yield ledger
    await ledger.close()


@pytest.fixture
async def engine(settings: Settings):
    """In-memory SQLite engine shared across sessions"""
    engine = build_engine(settings, poolclass=StaticPool)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


class RecordingTransport:
    """Transport that records deliveries and can be told to fail"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, str]] = []

    async def send(self, alert, channel) -> None:
        if self.fail:
            raise ConnectionError("transport unavailable")
        self.sent.append((alert.id, channel.id))


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def notifier(settings: Settings, transport: RecordingTransport, clock: ManualClock) -> NotificationRouter:
    channels = {
        "default": NotificationChannel(
            id="default",
            type=ChannelType.LOG,
            severity_filter=[Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL],
        ),
        "critical": NotificationChannel(
            id="critical",
            type=ChannelType.LOG,
            severity_filter=[Severity.CRITICAL],
        ),
    }
    return NotificationRouter(settings, channels=channels, transports={ChannelType.LOG: transport}, clock=clock)


@pytest.fixture
def executor(clock: ManualClock) -> ResponseActionExecutor:
    return ResponseActionExecutor(timeout=1.0, clock=clock)


@pytest.fixture
def manager(settings, ledger, notifier, executor, scheduler) -> AlertManager:
    return AlertManager(settings, ledger, notifier, executor, scheduler)


# ========== FACTORIES ========== #

def make_system(**overrides) -> SystemDescriptor:
    values = {
        "runtime_version": "3.11.8",
        "platform": "linux",
        "architecture": "x86_64",
        "hostname": "app-01",
        "uptime": 120.0,
    }
    values.update(overrides)
    return SystemDescriptor(**values)


def make_snapshot(
    environment: Optional[Dict[str, str]] = None,
    files: Optional[Dict[str, FileRecord]] = None,
    services: Optional[Dict[str, ServiceDescriptor]] = None,
    secrets: Optional[Dict[str, SecretReference]] = None,
    system: Optional[SystemDescriptor] = None,
) -> ConfigurationSnapshot:
    return ConfigurationSnapshot(
        environment=environment or {},
        files=files or {},
        services=services or {},
        secrets=secrets or {},
        system=system or make_system(),
        captured_at=START_TIME,
    )


def make_file(path: str, checksum: str = "abc123", size: int = 42) -> FileRecord:
    return FileRecord(path=path, checksum=checksum, size=size, modified=START_TIME)


def make_alert_data(**overrides) -> AlertCreate:
    values: Dict[str, Any] = {
        "severity": Severity.HIGH,
        "category": AlertCategory.CONFIGURATION_DRIFT,
        "title": "Configuration drift detected",
        "description": "Unexpected configuration change",
        "source": "drift_detector",
        "environment": "production",
        "affected_resources": ["DATABASE_URL"],
        "metadata": AlertMetadata(detection_method="test", risk_score=50),
    }
    values.update(overrides)
    return AlertCreate(**values)
