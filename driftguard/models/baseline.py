from typing import Any, Dict, Optional
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import SQLModel, Field

from driftguard.core.drift.types import Baseline, ConfigurationSnapshot


class BaselineRecord(SQLModel, table=True):
    __tablename__ = "baselines"

    id: str = Field(primary_key=True)
    environment: str = Field(index=True)
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), index=True, nullable=False))
    snapshot: Dict[str, Any] = Field(sa_type=JSON)  # ConfigurationSnapshot as JSON
    checksums: Dict[str, str] = Field(default_factory=dict, sa_type=JSON)
    author: str
    description: Optional[str] = Field(default=None)

    @classmethod
    def from_baseline(cls, baseline: Baseline) -> "BaselineRecord":
        return cls(
            id=baseline.id,
            environment=baseline.environment,
            timestamp=baseline.timestamp,
            snapshot=baseline.snapshot.model_dump(mode="json"),
            checksums=dict(baseline.checksums),
            author=baseline.author,
            description=baseline.description,
        )

    def to_baseline(self) -> Baseline:
        timestamp = self.timestamp
        # SQLite drops tzinfo on the way back
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return Baseline(
            id=self.id,
            environment=self.environment,
            timestamp=timestamp,
            snapshot=ConfigurationSnapshot.model_validate(self.snapshot),
            checksums=self.checksums or {},
            author=self.author,
            description=self.description,
        )
