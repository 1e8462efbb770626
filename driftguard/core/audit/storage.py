"""
Audit Log Storage
-----------------
Daily-partitioned, append-only JSON-lines files. One file per UTC day,
named ``audit-YYYY-MM-DD.jsonl``. Old partitions are moved to an
``archive`` sub-directory by the ledger's maintenance job.

All methods are blocking and are meant to be run in a worker thread.
"""

import json
import logging
import shutil
from collections import defaultdict
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional

from driftguard.core.audit.types import AuditEntry

logger = logging.getLogger(__name__)

FILE_PREFIX = "audit-"
FILE_SUFFIX = ".jsonl"
ARCHIVE_DIR = "archive"


class AuditStorage:
    def __init__(self, log_dir: str):
        self.log_dir = Path(log_dir)
        self.archive_dir = self.log_dir / ARCHIVE_DIR

    def ensure_directory(self) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, day: date) -> Path:
        return self.log_dir / f"{FILE_PREFIX}{day.isoformat()}{FILE_SUFFIX}"

    def write(self, entries: List[AuditEntry]) -> None:
        """
        Append entries to their daily partition.

        Every entry is serialized before any file is opened, so an entry that
        cannot be encoded leaves the partitions untouched.

        Raises:
            OSError: If any partition cannot be written
            PydanticSerializationError: If an entry cannot be encoded
        """
        by_day: Dict[date, List[str]] = defaultdict(list)
        for entry in entries:
            by_day[entry.timestamp.date()].append(entry.model_dump_json() + "\n")

        self.ensure_directory()
        for day, lines in by_day.items():
            with open(self.path_for(day), "a", encoding="utf-8") as f:
                f.writelines(lines)
                f.flush()

    def partitions(self) -> List[Path]:
        if not self.log_dir.is_dir():
            return []
        return sorted(self.log_dir.glob(f"{FILE_PREFIX}*{FILE_SUFFIX}"))

    def read(self, day: date) -> List[AuditEntry]:
        path = self.path_for(day)
        if not path.is_file():
            return []
        entries = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(AuditEntry.model_validate(json.loads(line)))
        return entries

    def last_entry(self) -> Optional[AuditEntry]:
        """Return the most recently persisted entry, used to resume the chain"""
        for path in reversed(self.partitions()):
            last_line = None
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        last_line = line
            if last_line:
                return AuditEntry.model_validate(json.loads(last_line))
        return None

    def archive_before(self, cutoff: datetime) -> int:
        """
        Move partitions for days before ``cutoff`` into the archive directory.

        Returns:
            Number of partitions archived
        """
        archived = 0
        for path in self.partitions():
            day_text = path.name[len(FILE_PREFIX):-len(FILE_SUFFIX)]
            try:
                day = date.fromisoformat(day_text)
            except ValueError:
                logger.warning(f"Skipping unrecognised audit partition {path.name}")
                continue
            if day < cutoff.date():
                self.archive_dir.mkdir(parents=True, exist_ok=True)
                shutil.move(str(path), str(self.archive_dir / path.name))
                archived += 1
        if archived:
            logger.info(f"Archived {archived} audit partitions older than {cutoff.date().isoformat()}")
        return archived
