"""
Snapshot Capture
----------------
Builds a ConfigurationSnapshot from the live environment: environment
variables, watched configuration files, service descriptors, secret
references and host information.

Every source is isolated. A source that fails is logged and skipped so a
partial snapshot is still produced.
"""

import hashlib
import inspect
import logging
import os
import platform
import socket
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from driftguard.core.config import Settings
from driftguard.core.drift.types import (
    ConfigurationSnapshot,
    FileRecord,
    SecretReference,
    ServiceDescriptor,
    ServiceStatus,
    SystemDescriptor,
)
from driftguard.core.utils import calculate_hash

logger = logging.getLogger(__name__)

_PROCESS_START = time.time()

# Environment variable names that denote secrets tracked by reference
SECRET_ENV_MARKERS = ("SECRET", "PASSWORD", "KEY", "TOKEN")

ServiceProvider = Callable[[], Union[List[ServiceDescriptor], Awaitable[List[ServiceDescriptor]]]]
SecretProbe = Callable[[str, Optional[str]], Union[bool, Awaitable[bool]]]


def default_secret_probe(name: str, value: Optional[str]) -> bool:
    """A secret is accessible when its source yields a non-empty value"""
    return bool(value)


def file_checksum(path: Path) -> str:
    """SHA-256 of the file content"""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def generate_checksums(snapshot: ConfigurationSnapshot) -> Dict[str, str]:
    """
    Per-section checksums of a snapshot.

    Environment values are redacted before hashing and the system section
    excludes uptime, which changes on every capture.
    """
    checksums = {
        "environment": calculate_hash(
            {key: redact_value(key, value) for key, value in snapshot.environment.items()}
        ),
        "system": calculate_hash(snapshot.system.model_dump(exclude={"uptime"})),
    }
    for path, record in snapshot.files.items():
        checksums[f"file:{path}"] = record.checksum
    for name, service in snapshot.services.items():
        checksums[f"service:{name}"] = calculate_hash(service.model_dump(mode="json"))
    return checksums


def redact_value(key: str, value: Any) -> Any:
    """Replace values of credential-looking keys"""
    upper = key.upper()
    if any(marker in upper for marker in SECRET_ENV_MARKERS):
        return "[REDACTED]"
    return value


class SnapshotCapturer:
    """
    Captures configuration snapshots.

    The environment source, service provider and secret probe are injected
    so hosts can plug in their own discovery mechanisms.
    """

    def __init__(
        self,
        settings: Settings,
        environment_source: Optional[Callable[[], Mapping[str, str]]] = None,
        service_provider: Optional[ServiceProvider] = None,
        secret_probe: Optional[SecretProbe] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.root = Path(settings.DRIFT_ROOT_DIR)
        self.watched_paths = list(settings.DRIFT_WATCHED_PATHS)
        self.excluded_paths = set(settings.DRIFT_EXCLUDED_PATHS)
        self.environment_source = environment_source or (lambda: dict(os.environ))
        self.service_provider = service_provider or self._default_services
        self.secret_probe = secret_probe or default_secret_probe
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def capture(self) -> ConfigurationSnapshot:
        """Capture the current configuration snapshot"""
        environment = self._capture_environment()
        files = self._capture_files()
        services = await self._capture_services()
        secrets = await self._capture_secrets(environment)
        system = self._capture_system()

        snapshot = ConfigurationSnapshot(
            environment=environment,
            files=files,
            services=services,
            secrets=secrets,
            system=system,
            captured_at=self.clock(),
        )
        logger.debug(
            f"Captured snapshot: {len(environment)} env vars, {len(files)} files, "
            f"{len(services)} services, {len(secrets)} secrets"
        )
        return snapshot

    def _capture_environment(self) -> Dict[str, str]:
        try:
            return {str(k): str(v) for k, v in self.environment_source().items()}
        except Exception as e:
            logger.warning(f"Failed to read environment variables: {str(e)}")
            return {}

    def _capture_files(self) -> Dict[str, FileRecord]:
        files: Dict[str, FileRecord] = {}
        for relative in self.watched_paths:
            if relative in self.excluded_paths:
                continue
            path = self.root / relative
            if not path.is_file():
                continue
            try:
                stat = path.stat()
                files[relative] = FileRecord(
                    path=relative,
                    checksum=file_checksum(path),
                    size=stat.st_size,
                    modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            except OSError as e:
                logger.warning(f"Failed to capture file {relative}: {str(e)}")
        return files

    async def _capture_services(self) -> Dict[str, ServiceDescriptor]:
        try:
            result = self.service_provider()
            if inspect.isawaitable(result):
                result = await result
            return {service.name: service for service in result}
        except Exception as e:
            logger.warning(f"Failed to capture service information: {str(e)}")
            return {}

    async def _capture_secrets(self, environment: Dict[str, str]) -> Dict[str, SecretReference]:
        secrets: Dict[str, SecretReference] = {}
        for name, value in environment.items():
            if not any(marker in name.upper() for marker in SECRET_ENV_MARKERS):
                continue
            try:
                accessible = self.secret_probe(name, value)
                if inspect.isawaitable(accessible):
                    accessible = await accessible
            except Exception as e:
                # Keep the reference so a failed probe never reads as a removal
                logger.warning(f"Secret probe failed for {name}: {str(e)}")
                accessible = False
            secrets[name] = SecretReference(
                name=name,
                type="environment_variable",
                source="environ",
                accessible=bool(accessible),
            )
        return secrets

    def _capture_system(self) -> SystemDescriptor:
        return SystemDescriptor(
            runtime_version=platform.python_version(),
            platform=platform.system().lower(),
            architecture=platform.machine(),
            hostname=socket.gethostname(),
            uptime=time.time() - _PROCESS_START,
        )

    def _default_services(self) -> List[ServiceDescriptor]:
        """Describe this process as the single monitored service"""
        return [
            ServiceDescriptor(
                name=self.settings.PROJECT_NAME.lower(),
                version=self.settings.VERSION,
                config={
                    "environment": self.settings.ENVIRONMENT,
                    "debug": self.settings.DEBUG,
                    "api_prefix": self.settings.API_V1_STR,
                    "database": self.settings.DATABASE_URL.split("://", 1)[0],
                },
                dependencies=["database"],
                status=ServiceStatus.RUNNING,
            )
        ]
