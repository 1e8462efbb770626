# driftguard/services/baseline_store.py
import logging
from typing import List, Optional

from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from driftguard.core.database import session_scope
from driftguard.core.drift.types import Baseline
from driftguard.models.baseline import BaselineRecord

logger = logging.getLogger(__name__)


class BaselineStore:
    """
    Persists baselines per environment.

    Older baselines stay addressable by id; the newest by timestamp is the
    environment's latest.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def save(self, baseline: Baseline) -> Baseline:
        async with session_scope(self.session_factory) as session:
            session.add(BaselineRecord.from_baseline(baseline))
        logger.info(f"Saved baseline {baseline.id} for {baseline.environment}")
        return baseline

    async def get(self, baseline_id: str) -> Optional[Baseline]:
        async with session_scope(self.session_factory) as session:
            record = await session.get(BaselineRecord, baseline_id)
            return record.to_baseline() if record else None

    async def latest(self, environment: str) -> Optional[Baseline]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(BaselineRecord)
                .where(BaselineRecord.environment == environment)
                .order_by(BaselineRecord.timestamp.desc())
                .limit(1)
            )
            record = result.scalars().first()
            return record.to_baseline() if record else None

    async def list(self, environment: Optional[str] = None) -> List[Baseline]:
        """List baselines, newest first"""
        async with session_scope(self.session_factory) as session:
            query = select(BaselineRecord).order_by(BaselineRecord.timestamp.desc())
            if environment:
                query = query.where(BaselineRecord.environment == environment)
            result = await session.execute(query)
            return [record.to_baseline() for record in result.scalars().all()]

    async def environments(self) -> List[str]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(select(BaselineRecord.environment).distinct())
            return sorted(result.scalars().all())
