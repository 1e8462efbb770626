# driftguard/api/routes/drift.py
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from driftguard.api.deps import get_drift_service, get_monitoring
from driftguard.core.drift.types import Baseline, DriftResult
from driftguard.core.exceptions import BaselineNotFoundError
from driftguard.services.drift_service import DriftService
from driftguard.services.monitoring import MonitoringService


class BaselineCreateRequest(BaseModel):
    """Request body for baseline creation"""
    environment: str
    author: str
    description: Optional[str] = None


class DriftDetectRequest(BaseModel):
    environment: str
    baseline_id: Optional[str] = None


class FileChangeRequest(BaseModel):
    path: str


class FileChangeResponse(BaseModel):
    path: str
    scheduled: bool


router = APIRouter()


@router.post("/baselines", response_model=Baseline, status_code=status.HTTP_201_CREATED)
async def create_baseline(
    body: BaselineCreateRequest,
    drift: DriftService = Depends(get_drift_service),
):
    """Capture the current configuration as the environment's new baseline"""
    return await drift.create_baseline(body.environment, body.author, body.description)


@router.get("/baselines", response_model=List[Baseline])
async def list_baselines(
    environment: Optional[str] = None,
    drift: DriftService = Depends(get_drift_service),
):
    return await drift.store.list(environment)


@router.get("/baselines/{baseline_id}", response_model=Baseline)
async def get_baseline(baseline_id: str, drift: DriftService = Depends(get_drift_service)):
    baseline = await drift.store.get(baseline_id)
    if baseline is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Baseline with ID {baseline_id} not found"
        )
    return baseline


@router.post("/detect", response_model=DriftResult)
async def detect_drift(
    body: DriftDetectRequest,
    drift: DriftService = Depends(get_drift_service),
):
    """Compare the current configuration against a baseline"""
    try:
        return await drift.detect_drift(body.environment, body.baseline_id)
    except BaselineNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/history")
async def get_drift_history(
    environment: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=1000),
    drift: DriftService = Depends(get_drift_service),
) -> List[Dict[str, Any]]:
    """Summaries of recent drift results, newest first"""
    results = drift.get_history(environment, limit)
    return [drift.summarize(r) for r in reversed(results)]


@router.get("/report", response_class=PlainTextResponse)
async def get_drift_report(
    environments: List[str] = Query(default=[]),
    drift: DriftService = Depends(get_drift_service),
):
    """Markdown drift report"""
    return drift.generate_report(environments)


@router.post("/file-change", response_model=FileChangeResponse, status_code=status.HTTP_202_ACCEPTED)
async def notify_file_change(
    body: FileChangeRequest,
    monitoring: MonitoringService = Depends(get_monitoring),
):
    """Schedule a debounced drift scan after a configuration file changed"""
    return FileChangeResponse(path=body.path, scheduled=monitoring.notify_file_change(body.path))


@router.get("/status")
async def get_monitoring_status(monitoring: MonitoringService = Depends(get_monitoring)):
    return monitoring.health()
