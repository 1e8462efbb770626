"""
Audit Ledger Tests
------------------
Tests for hash chaining, signatures, integrity verification, batched and
immediate persistence, chain resumption, queries, exports and compliance
reports.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from driftguard.core.audit.ledger import AuditLedger, compute_entry_hash
from driftguard.core.audit.storage import AuditStorage
from driftguard.core.audit.types import (
    AuditEventType,
    AuditFilter,
    AuditSeverity,
    AuditTarget,
    TargetType,
)
from driftguard.core.exceptions import AuditWriteError, UnsupportedExportFormatError
from tests.conftest import START_TIME

pytestmark = pytest.mark.asyncio


async def log_events(ledger: AuditLedger, count: int):
    ids = []
    for i in range(count):
        ids.append(await ledger.log_system_event("test_component", f"event_{i}", {"index": i}))
    return ids


# ========== TESTS FOR CHAINING ========== #

async def test_entries_are_chained(ledger):
    """Each entry links to the hash of the entry before it"""
    # Arrange / Act
    await log_events(ledger, 3)
    entries = ledger.entries

    # Assert
    assert entries[0].integrity.previous_hash == ""
    assert entries[1].integrity.previous_hash == entries[0].integrity.hash
    assert entries[2].integrity.previous_hash == entries[1].integrity.hash
    assert ledger.tail_hash == entries[2].integrity.hash
    for entry in entries:
        assert compute_entry_hash(entry) == entry.integrity.hash
        assert entry.id.startswith("audit_")
        assert entry.timestamp == START_TIME


async def test_untouched_chain_verifies(ledger):
    """A chain nobody tampered with is valid"""
    # Arrange
    await log_events(ledger, 5)

    # Act
    report = await ledger.verify_integrity()

    # Assert
    assert report.valid is True
    assert report.issues == []
    assert report.verified_count == 5


async def test_tampered_entry_invalidates_rest_of_chain(ledger):
    """Rewriting an entry and its hash flags it and every later entry"""
    # Arrange
    await log_events(ledger, 5)
    entries = ledger.entries
    tampered = entries[2]
    tampered.after = {"index": 999}
    tampered.integrity.hash = compute_entry_hash(tampered)

    # Act
    report = await ledger.verify_integrity()

    # Assert
    assert report.valid is False
    assert report.verified_count == 2
    assert report.issues[0] == f"Entry {tampered.id}: Invalid signature"
    assert report.issues[1] == f"Entry {entries[3].id}: Chain integrity broken"
    assert report.issues[2] == f"Entry {entries[4].id}: Chain integrity broken"


async def test_modified_content_without_rehash_is_a_hash_mismatch(ledger):
    """Changing content without fixing the hash is reported as a mismatch"""
    # Arrange
    await log_events(ledger, 2)
    entries = ledger.entries
    entries[0].description = "nothing to see here"
    entries[0].actor = "intruder"

    # Act
    report = await ledger.verify_integrity()

    # Assert
    assert report.valid is False
    assert f"Entry {entries[0].id}: Hash mismatch" in report.issues
    assert f"Entry {entries[1].id}: Chain integrity broken" in report.issues


async def test_deleted_entry_is_detected(ledger):
    """Removing an entry and relinking its successor breaks the successor's hash"""
    # Arrange
    await log_events(ledger, 4)
    entries = ledger.entries
    ledger._entries.remove(entries[1])
    entries[2].integrity.previous_hash = entries[0].integrity.hash

    # Act
    report = await ledger.verify_integrity()

    # Assert
    assert report.valid is False
    assert report.issues[0] == f"Entry {entries[2].id}: Hash mismatch"
    assert report.verified_count == 1


async def test_severity_downgrade_is_detected(ledger):
    """Severity and description are covered by the entry hash"""
    # Arrange
    await ledger.log_security_violation("scanner", "Privilege escalation", {"user": "svc"})
    entry = ledger.entries[0]
    entry.severity = AuditSeverity.INFO
    entry.description = "Routine check"

    # Act
    report = await ledger.verify_integrity()

    # Assert
    assert report.valid is False
    assert report.issues == [f"Entry {entry.id}: Hash mismatch"]


async def test_metadata_is_covered_by_hash(ledger):
    """Rewriting an entry's correlation id is detected"""
    # Arrange
    await log_events(ledger, 1)
    ledger.entries[0].metadata.correlation_id = "corr_forged"

    # Act
    report = await ledger.verify_integrity()

    # Assert
    assert report.valid is False


async def test_signature_depends_on_secret_key(settings, storage, clock):
    """Entries signed with another key fail verification"""
    # Arrange
    ledger = AuditLedger(settings, storage=storage, secret_key=b"key-one", clock=clock)
    await log_events(ledger, 1)
    ledger._secret_key = b"key-two"

    # Act
    report = await ledger.verify_integrity()
    await ledger.close()

    # Assert
    assert report.valid is False
    assert report.issues[0].endswith("Invalid signature")


async def test_concurrent_appends_form_a_single_chain(ledger):
    """Concurrent writers never fork the chain"""
    # Arrange / Act
    await asyncio.gather(*(
        ledger.log_system_event(f"component_{i}", "heartbeat") for i in range(20)
    ))

    # Assert
    entries = ledger.entries
    assert len(entries) == 20
    for previous, current in zip(entries, entries[1:]):
        assert current.integrity.previous_hash == previous.integrity.hash
    assert (await ledger.verify_integrity()).valid is True


async def test_memory_window_keeps_chain_verifiable(settings, storage, clock):
    """Entries dropped from memory do not break verification of the rest"""
    # Arrange
    settings.AUDIT_MAX_MEMORY_ENTRIES = 3
    ledger = AuditLedger(settings, storage=storage, clock=clock)

    # Act
    await log_events(ledger, 5)
    report = await ledger.verify_integrity()
    await ledger.close()

    # Assert
    assert len(ledger.entries) == 3
    assert report.valid is True
    assert report.verified_count == 3


# ========== TESTS FOR PERSISTENCE ========== #

async def test_non_critical_entries_are_batched(ledger, storage):
    """Info entries wait for a flush"""
    # Arrange
    await log_events(ledger, 2)

    # Act
    before_flush = storage.read(START_TIME.date())
    written = await ledger.flush()
    after_flush = storage.read(START_TIME.date())

    # Assert
    assert before_flush == []
    assert written == 2
    assert [e.id for e in after_flush] == [e.id for e in ledger.entries]
    assert ledger.pending_count == 0


async def test_full_batch_is_flushed(settings, storage, clock):
    """Reaching the batch size writes the batch"""
    # Arrange
    settings.AUDIT_BATCH_SIZE = 2
    ledger = AuditLedger(settings, storage=storage, clock=clock)

    # Act
    await log_events(ledger, 2)

    # Assert
    assert ledger.pending_count == 0
    assert len(storage.read(START_TIME.date())) == 2
    await ledger.close()


async def test_critical_entry_is_written_immediately(ledger, storage):
    """Critical entries are persisted with any pending entries ahead of them"""
    # Arrange
    await log_events(ledger, 1)

    # Act
    await ledger.log_security_violation("scanner", "Unauthorized config write", {"path": ".env"})

    # Assert
    persisted = storage.read(START_TIME.date())
    assert len(persisted) == 2
    assert persisted[0].integrity.hash == persisted[1].integrity.previous_hash
    assert persisted[1].severity == AuditSeverity.CRITICAL
    assert ledger.pending_count == 0


async def test_failed_critical_write_does_not_advance_chain(ledger, storage):
    """A critical entry that cannot be persisted is rejected"""
    # Arrange
    await log_events(ledger, 1)
    tail = ledger.tail_hash
    write_errors = []

    async def on_write_error(payload):
        write_errors.append(payload)

    ledger.on_write_error(on_write_error)

    # Act
    with patch.object(storage, "write", side_effect=OSError("disk full")):
        with pytest.raises(AuditWriteError):
            await ledger.log_security_violation("scanner", "Tampering attempt", {})

    # Assert
    assert ledger.tail_hash == tail
    assert len(ledger.entries) == 1
    assert len(write_errors) == 1
    assert "disk full" in write_errors[0]["error"]

    # The ledger keeps working once storage recovers
    await ledger.log_security_violation("scanner", "Tampering attempt", {})
    assert ledger.entries[-1].integrity.previous_hash == tail


async def test_failed_batch_flush_keeps_entries(ledger, storage):
    """A failed flush keeps the batch for the next attempt and notifies listeners"""
    # Arrange
    await log_events(ledger, 2)
    listener = AsyncMock()
    ledger.on_write_error(listener)

    # Act
    with patch.object(storage, "write", side_effect=OSError("read-only filesystem")):
        written = await ledger.flush()
    await asyncio.sleep(0)

    # Assert
    assert written == 0
    assert ledger.pending_count == 2
    listener.assert_awaited_once()
    assert await ledger.flush() == 2


async def test_text_with_lone_surrogates_is_persisted(ledger, storage):
    """Undecodable text is escaped so the entry is written and still verifies"""
    # Arrange
    await log_events(ledger, 1)

    # Act
    await ledger.log_security_violation("scanner", "Bad value caf\udce9", {"value": "caf\udce9"})

    # Assert
    persisted = storage.read(START_TIME.date())
    assert len(persisted) == 2
    assert ledger.pending_count == 0
    assert persisted[1].after == {"value": "caf\\udce9"}
    assert persisted[1].target.name == "Bad value caf\\udce9"
    assert compute_entry_hash(persisted[1]) == persisted[1].integrity.hash
    assert persisted[1].integrity.hash == ledger.tail_hash
    assert (await ledger.verify_integrity()).valid is True


async def test_encoding_failure_is_a_write_error(ledger, storage):
    """Any storage failure, not only I/O errors, is reported as a write error"""
    # Arrange
    await log_events(ledger, 1)
    tail = ledger.tail_hash
    listener = AsyncMock()
    ledger.on_write_error(listener)

    # Act
    with patch.object(storage, "write", side_effect=ValueError("cannot encode entry")):
        with pytest.raises(AuditWriteError):
            await ledger.log_security_violation("scanner", "Tampering attempt", {})
        written = await ledger.flush()
    await asyncio.sleep(0)

    # Assert
    assert ledger.tail_hash == tail
    assert written == 0
    assert ledger.pending_count == 1
    assert listener.await_count == 2
    assert await ledger.flush() == 1
    assert len(storage.read(START_TIME.date())) == 1


async def test_resume_continues_persisted_chain(settings, clock):
    """A new ledger links its first entry to the last persisted one"""
    # Arrange
    first = AuditLedger(settings, storage=AuditStorage(settings.AUDIT_LOG_DIR), clock=clock)
    await log_events(first, 3)
    await first.close()

    # Act
    second = AuditLedger(settings, storage=AuditStorage(settings.AUDIT_LOG_DIR), clock=clock)
    await second.resume()
    await log_events(second, 1)
    report = await second.verify_integrity()
    await second.close()

    # Assert
    assert second.entries[0].integrity.previous_hash == first.tail_hash
    assert report.valid is True


async def test_archive_moves_old_partitions(ledger, storage, clock):
    """Partitions older than the archive age are moved out of the log directory"""
    # Arrange
    await log_events(ledger, 1)
    await ledger.flush()
    clock.advance(days=120)

    # Act
    result = await ledger.archive_old_entries()

    # Assert
    assert result["partitions"] == 1
    assert storage.partitions() == []
    assert (storage.archive_dir / storage.path_for(START_TIME.date()).name).is_file()


async def test_maintenance_reports_violations(ledger):
    """Maintenance notifies integrity listeners when the chain is broken"""
    # Arrange
    await log_events(ledger, 2)
    listener = AsyncMock()
    ledger.on_integrity_violation(listener)
    ledger.entries[0].action = "rewritten"

    # Act
    report = await ledger.maintenance()

    # Assert
    assert report.valid is False
    listener.assert_awaited_once_with(report)


# ========== TESTS FOR LOGGING HELPERS ========== #

async def test_configuration_change_severity(ledger):
    """Security-related identifiers are critical, production changes are warnings"""
    # Arrange
    auth_target = AuditTarget(type=TargetType.CONFIGURATION, identifier="auth.timeout", environment="staging")
    prod_target = AuditTarget(type=TargetType.CONFIGURATION, identifier="cache.size", environment="production")

    # Act
    await ledger.log_configuration_change("alice", "update", auth_target, before=30, after=60)
    await ledger.log_configuration_change("alice", "create", prod_target, after=512)

    # Assert
    auth_entry, prod_entry = ledger.entries
    assert auth_entry.event_type == AuditEventType.CONFIG_UPDATE
    assert auth_entry.severity == AuditSeverity.CRITICAL
    assert "access_control" in auth_entry.metadata.compliance_flags
    assert prod_entry.event_type == AuditEventType.CONFIG_CREATE
    assert prod_entry.severity == AuditSeverity.WARNING
    assert prod_entry.description == "create operation on configuration 'cache.size' - created new configuration"


async def test_key_deletion_gets_security_critical_retention(ledger):
    """Critical key events are kept under legal hold"""
    # Act
    await ledger.log_key_event("admin", "delete", "key-1", "rsa", environment="production")

    # Assert
    entry = ledger.entries[0]
    assert entry.event_type == AuditEventType.KEY_DELETE
    assert entry.retention.category == "security_critical"
    assert entry.retention.legal_hold is True


async def test_entry_listener_receives_entries(ledger):
    """Entry listeners see every appended entry"""
    # Arrange
    listener = AsyncMock()
    ledger.on_entry(listener)

    # Act
    await ledger.log_access_event("admin", "deny", "bob", "billing", "write")

    # Assert
    listener.assert_awaited_once()
    entry = listener.await_args.args[0]
    assert entry.event_type == AuditEventType.ACCESS_DENY
    assert entry.severity == AuditSeverity.WARNING


# ========== TESTS FOR QUERIES AND REPORTS ========== #

async def test_query_filters(ledger, clock):
    """Filters combine with AND semantics"""
    # Arrange
    await ledger.log_system_event("api", "startup")
    clock.advance(minutes=10)
    await ledger.log_alert_event("alice", "alert_1", "create", "Alert created", AuditSeverity.WARNING,
                                 correlation_id="corr_1")
    clock.advance(minutes=10)
    await ledger.log_secret_event("bob", "rotate", "db_password", environment="production")

    # Act
    alerts = ledger.query(AuditFilter(target_types=[TargetType.ALERT]))
    correlated = ledger.query(AuditFilter(correlation_ids=["corr_1"]))
    warnings_after = ledger.query(AuditFilter(
        severities=[AuditSeverity.WARNING], start=START_TIME + timedelta(minutes=15)
    ))
    production = ledger.query(AuditFilter(environments=["production"]))

    # Assert
    assert [e.action for e in alerts] == ["alert_create"]
    assert [e.action for e in correlated] == ["alert_create"]
    assert [e.action for e in warnings_after] == ["secret_rotate"]
    assert [e.action for e in production] == ["secret_rotate"]


async def test_naive_filter_bounds_are_treated_as_utc(ledger):
    """Filters built from naive datetimes compare against aware timestamps"""
    # Arrange
    await log_events(ledger, 1)
    naive_start = START_TIME.replace(tzinfo=None) - timedelta(minutes=1)

    # Act
    results = ledger.query(AuditFilter(start=naive_start))

    # Assert
    assert len(results) == 1


async def test_export_formats(ledger):
    """Entries export as json, csv and syslog"""
    # Arrange
    await ledger.log_system_event("api", "startup")
    await ledger.log_security_violation("scanner", "Unexpected listener", {"port": 4444})

    # Act
    as_json = json.loads(ledger.export(fmt="json"))
    as_csv = ledger.export(fmt="csv").splitlines()
    as_syslog = ledger.export(fmt="syslog").splitlines()

    # Assert
    assert len(as_json) == 2
    assert as_json[1]["event_type"] == "security.violation"
    assert as_csv[0] == "ID,Timestamp,Event Type,Severity,Actor,Source,Target Type,Target ID,Action,Description"
    assert len(as_csv) == 3
    assert as_syslog[0].startswith("<6>")
    assert as_syslog[1].startswith("<2>")
    assert "driftguard-audit: security.violation" in as_syslog[1]


async def test_unsupported_export_format(ledger):
    """Unknown formats are rejected"""
    with pytest.raises(UnsupportedExportFormatError):
        ledger.export(fmt="xml")


async def test_statistics(ledger):
    """Statistics count entries per event type, severity and source"""
    # Arrange
    await log_events(ledger, 2)
    await ledger.log_security_violation("scanner", "Port scan", {})

    # Act
    stats = ledger.statistics()

    # Assert
    assert stats["total_entries"] == 3
    assert stats["by_event_type"] == {"system.start": 2, "security.violation": 1}
    assert stats["by_severity"] == {"info": 2, "critical": 1}
    assert stats["by_source"]["security_monitor"] == 1
    assert stats["time_range"]["oldest"] == START_TIME


async def test_compliance_report(ledger):
    """Critical events lower the score and produce a finding"""
    # Arrange
    await ledger.log_system_event("api", "startup")
    await ledger.log_security_violation("scanner", "Privilege escalation", {"user": "eve"})

    # Act
    report = ledger.generate_compliance_report(
        "SOC2", "test", START_TIME - timedelta(hours=1), START_TIME + timedelta(hours=1)
    )

    # Assert
    assert report.standard == "SOC2"
    assert report.summary.total_events == 2
    assert report.summary.compliance_score == 50
    assert report.summary.by_severity == {"info": 1, "critical": 1}
    assert len(report.findings) == 1
    assert report.findings[0].title == "Critical Security Events Detected"
    assert "Implement additional security controls to prevent violations" in report.recommendations


async def test_compliance_report_without_events(ledger):
    """An empty period is fully compliant"""
    # Act
    report = ledger.generate_compliance_report(
        "GDPR", "production", START_TIME, START_TIME + timedelta(days=1)
    )

    # Assert
    assert report.summary.total_events == 0
    assert report.summary.compliance_score == 100
    assert report.findings == []
