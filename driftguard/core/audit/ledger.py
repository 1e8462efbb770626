"""
Tamper-Evident Audit Ledger
---------------------------
Append-only, hash-chained and HMAC-signed log of every audit-worthy action.

All appends go through a single writer task fed by a queue, so the
previous-hash linkage is always computed against the true tail of the
chain even when many components log concurrently.

Persistence is batched: entries are written to daily JSON-lines files when
the batch fills up or the flush interval elapses. Critical entries are
written immediately; if that write fails the entry is rejected and the
chain does not advance.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

from driftguard.core.audit.policy import (
    assess_severity,
    classify_security_level,
    describe_change,
    get_retention_policy,
    identify_compliance_flags,
)
from driftguard.core.audit.reports import export_entries, generate_compliance_report
from driftguard.core.audit.storage import AuditStorage
from driftguard.core.audit.types import (
    AuditDraft,
    AuditEntry,
    AuditEventType,
    AuditFilter,
    AuditMetadata,
    AuditSeverity,
    AuditTarget,
    ComplianceReport,
    IntegrityData,
    IntegrityReport,
    SecurityLevel,
    TargetType,
)
from driftguard.core.config import Settings
from driftguard.core.exceptions import AuditWriteError
from driftguard.core.observability import (
    AUDIT_ENTRY_COUNTER,
    AUDIT_WRITE_FAILURES,
    INTEGRITY_VIOLATION_COUNTER,
)
from driftguard.core.scheduler import utc_now
from driftguard.core.utils import canonical_json

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Awaitable[None]]

_APPEND = "append"
_FLUSH = "flush"

MAX_LOGGED_DRIFT_CHANGES = 10

CONFIG_EVENT_TYPES = {
    "create": AuditEventType.CONFIG_CREATE,
    "update": AuditEventType.CONFIG_UPDATE,
    "delete": AuditEventType.CONFIG_DELETE,
    "read": AuditEventType.CONFIG_READ,
}


def compute_entry_hash(entry: AuditEntry) -> str:
    """
    SHA-256 over the content of an entry and the hash of its predecessor.

    Covering ``previous_hash`` makes the chain link itself tamper-evident:
    removing an entry means rewriting its successor's link, which changes
    the successor's hash.
    """
    hash_data = {
        "id": entry.id,
        "timestamp": entry.timestamp.isoformat(),
        "event_type": entry.event_type.value,
        "severity": entry.severity.value,
        "actor": entry.actor,
        "source": entry.source,
        "target": entry.target.model_dump(mode="json"),
        "action": entry.action,
        "description": entry.description,
        "before": entry.before,
        "after": entry.after,
        "metadata": entry.metadata.model_dump(mode="json"),
        "previous_hash": entry.integrity.previous_hash,
    }
    return hashlib.sha256(canonical_json(hash_data).encode()).hexdigest()


def _scrub(value: Any) -> Any:
    """Escape lone surrogates so every string can be written as UTF-8"""
    if isinstance(value, str):
        return value.encode("utf-8", "backslashreplace").decode("utf-8")
    if isinstance(value, dict):
        return {_scrub(k): _scrub(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    return value


def _jsonable(value: Any) -> Any:
    if value is None:
        return None
    return _scrub(json.loads(canonical_json(value)))


class AuditLedger:
    """
    Single-writer audit ledger.

    Components call ``append`` (or one of the ``log_*`` helpers); the writer
    task assigns ids, timestamps and integrity blocks strictly in queue
    order.
    """

    def __init__(
        self,
        settings: Settings,
        storage: Optional[AuditStorage] = None,
        secret_key: Optional[bytes] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.storage = storage or AuditStorage(settings.AUDIT_LOG_DIR)
        self.clock = clock
        self.environment = settings.ENVIRONMENT
        self.batch_size = settings.AUDIT_BATCH_SIZE
        self.flush_interval = settings.AUDIT_FLUSH_INTERVAL
        self.max_memory_entries = settings.AUDIT_MAX_MEMORY_ENTRIES

        if secret_key is not None:
            self._secret_key = secret_key
        elif settings.AUDIT_SECRET_KEY:
            self._secret_key = settings.AUDIT_SECRET_KEY.encode()
        else:
            self._secret_key = secrets.token_bytes(32)

        self._entries: List[AuditEntry] = []
        self._pending: List[AuditEntry] = []
        self._tail_hash = ""
        # Hash preceding the first entry held in memory
        self._window_anchor = ""

        self._queue: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None
        self._flush_timer: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

        self._entry_listeners: List[Listener] = []
        self._write_error_listeners: List[Listener] = []
        self._integrity_listeners: List[Listener] = []

    # ---------- Subscriptions ---------- #

    def on_entry(self, listener: Listener) -> None:
        self._entry_listeners.append(listener)

    def on_write_error(self, listener: Listener) -> None:
        """Register a listener called with an error payload when persistence fails"""
        self._write_error_listeners.append(listener)

    def on_integrity_violation(self, listener: Listener) -> None:
        self._integrity_listeners.append(listener)

    # ---------- Lifecycle ---------- #

    @property
    def entries(self) -> List[AuditEntry]:
        return list(self._entries)

    @property
    def tail_hash(self) -> str:
        return self._tail_hash

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def resume(self) -> None:
        """Continue the chain from the last persisted entry, if any"""
        last = await asyncio.to_thread(self.storage.last_entry)
        if last is not None and not self._entries:
            self._tail_hash = last.integrity.hash
            self._window_anchor = last.integrity.hash
            logger.info(f"Audit chain resumed after entry {last.id}")

    async def close(self) -> None:
        """Flush pending entries and stop the writer task"""
        if self._writer is None:
            return
        await self.flush()

        tasks = [t for t in (self._flush_timer, self._writer) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, *self._background, return_exceptions=True)
        self._writer = None
        self._flush_timer = None
        logger.info("Audit ledger closed")

    def _ensure_writer(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._run_writer())

    async def _enqueue(self, command: str, payload: Any = None) -> Any:
        self._ensure_writer()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((command, payload, future))
        return await future

    async def _run_writer(self) -> None:
        while True:
            command, payload, future = await self._queue.get()
            try:
                if command == _APPEND:
                    result = await self._write(payload)
                else:
                    result = await self._flush_pending()
                if not future.done():
                    future.set_result(result)
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            finally:
                self._queue.task_done()

    # ---------- Writing ---------- #

    async def append(self, draft: AuditDraft) -> AuditEntry:
        """
        Append an entry to the ledger.

        Args:
            draft: Entry content without id, timestamp or integrity data

        Returns:
            The complete, chained entry

        Raises:
            AuditWriteError: If a critical entry could not be persisted
        """
        try:
            entry = await self._enqueue(_APPEND, draft)
        except AuditWriteError as e:
            await self._emit(self._write_error_listeners, {"error": str(e), "draft": draft})
            raise
        await self._emit(self._entry_listeners, entry)
        return entry

    async def flush(self) -> int:
        """Persist pending entries; returns the number written"""
        return await self._enqueue(_FLUSH)

    def _sign(self, entry_hash: str) -> str:
        return hmac.new(self._secret_key, entry_hash.encode(), hashlib.sha256).hexdigest()

    def _generate_entry_id(self, timestamp: datetime, draft: AuditDraft) -> str:
        time_ms = int(timestamp.timestamp() * 1000)
        digest = hashlib.sha256(
            f"{time_ms}-{draft.event_type.value}-{draft.actor}-{uuid4().hex}".encode()
        ).hexdigest()
        return f"audit_{time_ms}_{digest[:8]}"

    def _build_entry(self, draft: AuditDraft) -> AuditEntry:
        # Hashed and persisted text must be identical, so escape it up front
        draft = AuditDraft.model_validate(_scrub(draft.model_dump()))
        timestamp = self.clock()
        entry = AuditEntry(
            id=self._generate_entry_id(timestamp, draft),
            timestamp=timestamp,
            event_type=draft.event_type,
            severity=draft.severity,
            actor=draft.actor,
            source=draft.source,
            target=draft.target,
            action=draft.action,
            description=draft.description,
            before=_jsonable(draft.before),
            after=_jsonable(draft.after),
            metadata=draft.metadata,
            integrity=IntegrityData(hash="", signature="", previous_hash=self._tail_hash),
            retention=get_retention_policy(draft.target.type, draft.severity),
        )
        entry_hash = compute_entry_hash(entry)
        entry.integrity = IntegrityData(
            hash=entry_hash,
            signature=self._sign(entry_hash),
            algorithm="sha256",
            previous_hash=self._tail_hash,
        )
        return entry

    async def _write(self, draft: AuditDraft) -> AuditEntry:
        entry = self._build_entry(draft)

        if entry.severity == AuditSeverity.CRITICAL:
            # Pending entries precede this one in the chain, keep file order
            batch = self._pending + [entry]
            try:
                await asyncio.to_thread(self.storage.write, batch)
            except Exception as e:
                AUDIT_WRITE_FAILURES.inc()
                logger.critical(f"Failed to persist critical audit entry {entry.id}: {str(e)}")
                raise AuditWriteError(f"Failed to persist audit entry {entry.id}: {str(e)}") from e
            self._pending = []
        else:
            self._pending.append(entry)

        self._commit(entry)
        AUDIT_ENTRY_COUNTER.labels(event_type=entry.event_type.value, severity=entry.severity.value).inc()

        if len(self._pending) >= self.batch_size:
            await self._flush_pending()
        elif self._pending:
            self._arm_flush_timer()

        return entry

    def _commit(self, entry: AuditEntry) -> None:
        self._entries.append(entry)
        self._tail_hash = entry.integrity.hash

        if len(self._entries) > self.max_memory_entries:
            overflow = len(self._entries) - self.max_memory_entries
            self._window_anchor = self._entries[overflow - 1].integrity.hash
            self._entries = self._entries[overflow:]

    async def _flush_pending(self) -> int:
        if not self._pending:
            return 0

        batch = self._pending
        self._pending = []
        try:
            await asyncio.to_thread(self.storage.write, batch)
        except Exception as e:
            # Keep the batch for the next flush
            self._pending = batch + self._pending
            AUDIT_WRITE_FAILURES.inc()
            logger.critical(f"Failed to persist {len(batch)} audit entries: {str(e)}")
            self._spawn(self._emit(self._write_error_listeners, {"error": str(e), "entries": len(batch)}))
            return 0

        logger.debug(f"Flushed {len(batch)} audit entries")
        return len(batch)

    def _arm_flush_timer(self) -> None:
        if self._flush_timer is None or self._flush_timer.done():
            self._flush_timer = asyncio.create_task(self._flush_after_delay())

    async def _flush_after_delay(self) -> None:
        await asyncio.sleep(self.flush_interval)
        self._flush_timer = None
        await self._enqueue(_FLUSH)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _emit(self, listeners: List[Listener], payload: Any) -> None:
        for listener in list(listeners):
            try:
                await listener(payload)
            except Exception as e:
                logger.error(f"Audit listener {getattr(listener, '__name__', listener)} failed: {str(e)}")

    # ---------- Reading ---------- #

    async def verify_integrity(self) -> IntegrityReport:
        """
        Walk the in-memory chain recomputing hashes and signatures.

        The chain anchor only advances past entries that verify, so a
        tampered entry invalidates every entry after it.

        Returns:
            IntegrityReport with the issues found and the verified count
        """
        issues: List[str] = []
        verified = 0
        anchor = self._window_anchor

        for entry in list(self._entries):
            if compute_entry_hash(entry) != entry.integrity.hash:
                issues.append(f"Entry {entry.id}: Hash mismatch")
                continue

            if entry.integrity.previous_hash != anchor:
                issues.append(f"Entry {entry.id}: Chain integrity broken")
                continue

            if not hmac.compare_digest(self._sign(entry.integrity.hash), entry.integrity.signature):
                issues.append(f"Entry {entry.id}: Invalid signature")
                continue

            verified += 1
            anchor = entry.integrity.hash

        return IntegrityReport(valid=not issues, issues=issues, verified_count=verified)

    def query(self, audit_filter: Optional[AuditFilter] = None) -> List[AuditEntry]:
        """Return in-memory entries matching the filter, in ledger order"""
        f = audit_filter or AuditFilter()
        results = []
        for entry in self._entries:
            if f.start and entry.timestamp < f.start:
                continue
            if f.end and entry.timestamp > f.end:
                continue
            if f.event_types and entry.event_type not in f.event_types:
                continue
            if f.severities and entry.severity not in f.severities:
                continue
            if f.actors and entry.actor not in f.actors:
                continue
            if f.sources and entry.source not in f.sources:
                continue
            if f.target_types and entry.target.type not in f.target_types:
                continue
            if f.environments and entry.target.environment not in f.environments:
                continue
            if f.correlation_ids and entry.metadata.correlation_id not in f.correlation_ids:
                continue
            results.append(entry)
        return results

    def export(self, audit_filter: Optional[AuditFilter] = None, fmt: str = "json") -> str:
        return export_entries(self.query(audit_filter), fmt)

    def statistics(self) -> Dict[str, Any]:
        by_event_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        by_source: Dict[str, int] = {}
        for entry in self._entries:
            by_event_type[entry.event_type.value] = by_event_type.get(entry.event_type.value, 0) + 1
            by_severity[entry.severity.value] = by_severity.get(entry.severity.value, 0) + 1
            by_source[entry.source] = by_source.get(entry.source, 0) + 1

        return {
            "total_entries": len(self._entries),
            "by_event_type": by_event_type,
            "by_severity": by_severity,
            "by_source": by_source,
            "time_range": {
                "oldest": self._entries[0].timestamp if self._entries else None,
                "newest": self._entries[-1].timestamp if self._entries else None,
            },
        }

    def generate_compliance_report(
        self,
        standard: str,
        environment: str,
        start: datetime,
        end: datetime,
    ) -> ComplianceReport:
        entries = self.query(AuditFilter(start=start, end=end, environments=[environment]))
        report = generate_compliance_report(entries, standard, environment, start, end, self.clock())
        logger.info(
            f"Generated {standard} compliance report for {environment}: "
            f"score {report.summary.compliance_score}"
        )
        return report

    # ---------- Maintenance ---------- #

    async def archive_old_entries(self) -> Dict[str, int]:
        cutoff = self.clock() - timedelta(days=self.settings.AUDIT_ARCHIVE_AFTER_DAYS)
        old_in_memory = sum(1 for e in self._entries if e.timestamp < cutoff)
        archived_files = await asyncio.to_thread(self.storage.archive_before, cutoff)
        if old_in_memory:
            logger.info(f"{old_in_memory} in-memory audit entries are older than {cutoff.date().isoformat()}")
        return {"entries": old_in_memory, "partitions": archived_files}

    async def maintenance(self) -> IntegrityReport:
        """Flush pending writes, archive old partitions and verify the chain"""
        await self.flush()
        await self.archive_old_entries()

        report = await self.verify_integrity()
        if not report.valid:
            INTEGRITY_VIOLATION_COUNTER.inc()
            logger.critical(f"Audit integrity violation: {len(report.issues)} issues found")
            await self._emit(self._integrity_listeners, report)
        return report

    # ---------- Logging helpers ---------- #

    @staticmethod
    def _metadata(
        metadata: Optional[AuditMetadata],
        security_level: Optional[SecurityLevel],
        compliance_flags: List[str],
    ) -> AuditMetadata:
        base = metadata or AuditMetadata()
        return base.model_copy(update={"security_level": security_level, "compliance_flags": compliance_flags})

    async def log_configuration_change(
        self,
        actor: str,
        action: str,
        target: AuditTarget,
        before: Optional[Any] = None,
        after: Optional[Any] = None,
        metadata: Optional[AuditMetadata] = None,
    ) -> str:
        entry = await self.append(
            AuditDraft(
                event_type=CONFIG_EVENT_TYPES.get(action.lower(), AuditEventType.CONFIG_UPDATE),
                severity=assess_severity(action, target, before, after),
                actor=actor,
                source="configuration_manager",
                target=target,
                action=action,
                description=describe_change(action, target, before, after),
                before=before,
                after=after,
                metadata=self._metadata(
                    metadata, classify_security_level(target), identify_compliance_flags(target, action)
                ),
            )
        )
        return entry.id

    async def log_secret_event(
        self,
        actor: str,
        action: str,
        secret_id: str,
        environment: Optional[str] = None,
        metadata: Optional[AuditMetadata] = None,
    ) -> str:
        if action == "delete":
            severity = AuditSeverity.CRITICAL
        elif action == "rotate":
            severity = AuditSeverity.WARNING
        else:
            severity = AuditSeverity.INFO

        entry = await self.append(
            AuditDraft(
                event_type=AuditEventType(f"secret.{action}"),
                severity=severity,
                actor=actor,
                source="secret_manager",
                target=AuditTarget(type=TargetType.SECRET, identifier=secret_id, environment=environment),
                action=f"secret_{action}",
                description=f"Secret {action} operation performed on {secret_id}",
                metadata=self._metadata(metadata, SecurityLevel.SECRET, ["data_protection", "access_control"]),
            )
        )
        return entry.id

    async def log_key_event(
        self,
        actor: str,
        action: str,
        key_id: str,
        key_type: str,
        environment: Optional[str] = None,
        metadata: Optional[AuditMetadata] = None,
    ) -> str:
        severity = AuditSeverity.CRITICAL if action in ("delete", "recover") else AuditSeverity.WARNING
        entry = await self.append(
            AuditDraft(
                event_type=AuditEventType(f"key.{action}"),
                severity=severity,
                actor=actor,
                source="key_manager",
                target=AuditTarget(
                    type=TargetType.KEY, identifier=key_id, category=key_type, environment=environment
                ),
                action=f"key_{action}",
                description=f"Cryptographic key {action} operation performed on {key_type} key {key_id}",
                metadata=self._metadata(
                    metadata, SecurityLevel.TOP_SECRET, ["encryption", "key_management", "data_protection"]
                ),
            )
        )
        return entry.id

    async def log_access_event(
        self,
        actor: str,
        action: str,
        target_user: str,
        resource: str,
        permission: str,
        metadata: Optional[AuditMetadata] = None,
    ) -> str:
        entry = await self.append(
            AuditDraft(
                event_type=AuditEventType(f"access.{action}"),
                severity=AuditSeverity.WARNING if action == "deny" else AuditSeverity.INFO,
                actor=actor,
                source="access_control",
                target=AuditTarget(
                    type=TargetType.ACCESS,
                    identifier=f"{target_user}:{resource}:{permission}",
                    name=f"{permission} on {resource}",
                ),
                action=f"access_{action}",
                description=f"Access {action} for user {target_user} to {resource} with permission {permission}",
                metadata=self._metadata(
                    metadata, SecurityLevel.CONFIDENTIAL, ["access_control", "privilege_management"]
                ),
            )
        )
        return entry.id

    async def log_security_violation(
        self,
        actor: str,
        violation: str,
        details: Any,
        severity: AuditSeverity = AuditSeverity.CRITICAL,
        environment: Optional[str] = None,
        metadata: Optional[AuditMetadata] = None,
    ) -> str:
        entry = await self.append(
            AuditDraft(
                event_type=AuditEventType.SECURITY_VIOLATION,
                severity=severity,
                actor=actor,
                source="security_monitor",
                target=AuditTarget(
                    type=TargetType.SYSTEM,
                    identifier="security_violation",
                    name=violation,
                    environment=environment or self.environment,
                ),
                action="security_violation",
                description=f"Security violation detected: {violation}",
                after=details,
                metadata=self._metadata(
                    metadata, SecurityLevel.TOP_SECRET, ["security_incident", "threat_detection"]
                ),
            )
        )
        return entry.id

    async def log_drift_detection(
        self,
        environment: str,
        drift_score: float,
        changes: List[Dict[str, Any]],
        severity: AuditSeverity,
        metadata: Optional[AuditMetadata] = None,
    ) -> str:
        entry = await self.append(
            AuditDraft(
                event_type=AuditEventType.DRIFT_DETECTED,
                severity=severity,
                actor="system",
                source="drift_detector",
                target=AuditTarget(
                    type=TargetType.CONFIGURATION,
                    identifier=f"drift_{environment}",
                    environment=environment,
                    name="Configuration Drift",
                ),
                action="drift_detection",
                description=f"Configuration drift detected in {environment} with score {drift_score:.2f}",
                after={
                    "drift_score": drift_score,
                    "change_count": len(changes),
                    "changes": changes[:MAX_LOGGED_DRIFT_CHANGES],
                },
                metadata=self._metadata(
                    metadata, SecurityLevel.CONFIDENTIAL, ["configuration_management", "change_control"]
                ),
            )
        )
        return entry.id

    async def log_system_event(
        self,
        component: str,
        event: str,
        details: Optional[Any] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        metadata: Optional[AuditMetadata] = None,
    ) -> str:
        if "error" in event:
            event_type = AuditEventType.SYSTEM_ERROR
        elif "stop" in event:
            event_type = AuditEventType.SYSTEM_STOP
        else:
            event_type = AuditEventType.SYSTEM_START

        entry = await self.append(
            AuditDraft(
                event_type=event_type,
                severity=severity,
                actor=component,
                source=component,
                target=AuditTarget(
                    type=TargetType.SYSTEM, identifier=component, name=component, environment=self.environment
                ),
                action=event,
                description=f"System event: {event}",
                after=details,
                metadata=metadata or AuditMetadata(),
            )
        )
        return entry.id

    async def log_alert_event(
        self,
        actor: str,
        alert_id: str,
        action: str,
        description: str,
        severity: AuditSeverity,
        environment: Optional[str] = None,
        before: Optional[Any] = None,
        after: Optional[Any] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        """Mirror an alert lifecycle event into the ledger"""
        entry = await self.append(
            AuditDraft(
                event_type=AuditEventType.ALERT_TRIGGERED if action == "create" else AuditEventType.ALERT_UPDATED,
                severity=severity,
                actor=actor,
                source="alert_manager",
                target=AuditTarget(
                    type=TargetType.ALERT, identifier=alert_id, environment=environment or self.environment
                ),
                action=f"alert_{action}",
                description=description,
                before=before,
                after=after,
                metadata=AuditMetadata(correlation_id=correlation_id),
            )
        )
        return entry.id

    async def log_baseline_created(
        self,
        actor: str,
        baseline_id: str,
        environment: str,
        checksums: Dict[str, str],
    ) -> str:
        entry = await self.append(
            AuditDraft(
                event_type=AuditEventType.BASELINE_CREATED,
                severity=AuditSeverity.INFO,
                actor=actor,
                source="drift_detector",
                target=AuditTarget(
                    type=TargetType.CONFIGURATION,
                    identifier=baseline_id,
                    environment=environment,
                    name="Configuration Baseline",
                ),
                action="baseline_create",
                description=f"Configuration baseline {baseline_id} created for {environment}",
                after={"checksums": checksums},
                metadata=self._metadata(None, SecurityLevel.CONFIDENTIAL, ["configuration_management"]),
            )
        )
        return entry.id
