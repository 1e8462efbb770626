# driftguard/api/routes/alerts.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from driftguard.api.deps import get_alert_manager
from driftguard.core.alerts.manager import AlertManager
from driftguard.core.alerts.types import (
    Alert,
    AlertCategory,
    AlertCreate,
    AlertFilter,
    AlertStatus,
    Incident,
    ResponseAction,
    ResponseActionCreate,
)
from driftguard.core.drift.types import Severity
from driftguard.core.exceptions import (
    AlertNotFoundError,
    InvalidStatusTransitionError,
    ResponseActionNotFoundError,
    UnsupportedExportFormatError,
)


class CreatedResponse(BaseModel):
    id: str


class StatusUpdateRequest(BaseModel):
    status: AlertStatus
    actor: Optional[str] = None
    comment: Optional[str] = None


class AssignRequest(BaseModel):
    assignee: str
    actor: Optional[str] = None


class EscalateRequest(BaseModel):
    reason: str = "manual escalation"


class ExecuteActionRequest(BaseModel):
    actor: Optional[str] = None


router = APIRouter()

EXPORT_MEDIA_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
    "siem": "application/x-ndjson",
}


def alert_filter(
    severity: List[Severity] = Query(default=[]),
    category: List[AlertCategory] = Query(default=[]),
    alert_status: List[AlertStatus] = Query(default=[], alias="status"),
    environment: List[str] = Query(default=[]),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    assigned_to: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> AlertFilter:
    """Build an AlertFilter from query parameters"""
    return AlertFilter(
        severity=severity,
        category=category,
        status=alert_status,
        environment=environment,
        start=start,
        end=end,
        assigned_to=assigned_to,
        correlation_id=correlation_id,
    )


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("", response_model=CreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_alert(body: AlertCreate, manager: AlertManager = Depends(get_alert_manager)):
    """Create a security alert"""
    alert_id = await manager.create_alert(body)
    return CreatedResponse(id=alert_id)


@router.get("", response_model=List[Alert])
async def query_alerts(
    filters: AlertFilter = Depends(alert_filter),
    manager: AlertManager = Depends(get_alert_manager),
):
    """Alerts matching the filters, newest first"""
    return manager.query_alerts(filters)


@router.get("/dashboard")
async def get_dashboard(manager: AlertManager = Depends(get_alert_manager)) -> Dict[str, Any]:
    return manager.dashboard()


@router.get("/export", response_class=PlainTextResponse)
async def export_alerts(
    export_format: str = Query(default="json", alias="format"),
    filters: AlertFilter = Depends(alert_filter),
    manager: AlertManager = Depends(get_alert_manager),
):
    """Export alerts as json, csv or siem"""
    try:
        content = manager.export_alerts(filters, export_format)
    except UnsupportedExportFormatError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return PlainTextResponse(content, media_type=EXPORT_MEDIA_TYPES[export_format])


@router.get("/incidents", response_model=List[Incident])
async def list_incidents(manager: AlertManager = Depends(get_alert_manager)):
    return sorted(manager.incidents.values(), key=lambda i: i.created_at, reverse=True)


@router.get("/{alert_id}", response_model=Alert)
async def get_alert(alert_id: str, manager: AlertManager = Depends(get_alert_manager)):
    try:
        return manager.get_alert(alert_id)
    except AlertNotFoundError as e:
        raise _not_found(e)


@router.post("/{alert_id}/status", response_model=Alert)
async def update_alert_status(
    alert_id: str,
    body: StatusUpdateRequest,
    manager: AlertManager = Depends(get_alert_manager),
):
    """Move an alert through its lifecycle"""
    try:
        return await manager.update_alert_status(alert_id, body.status, body.actor, body.comment)
    except AlertNotFoundError as e:
        raise _not_found(e)
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/{alert_id}/assign", response_model=Alert)
async def assign_alert(
    alert_id: str,
    body: AssignRequest,
    manager: AlertManager = Depends(get_alert_manager),
):
    try:
        return await manager.assign_alert(alert_id, body.assignee, body.actor)
    except AlertNotFoundError as e:
        raise _not_found(e)


@router.post("/{alert_id}/escalate", response_model=Alert)
async def escalate_alert(
    alert_id: str,
    body: EscalateRequest,
    manager: AlertManager = Depends(get_alert_manager),
):
    try:
        return await manager.escalate(alert_id, body.reason)
    except AlertNotFoundError as e:
        raise _not_found(e)


@router.post("/{alert_id}/actions", response_model=CreatedResponse, status_code=status.HTTP_201_CREATED)
async def add_response_action(
    alert_id: str,
    body: ResponseActionCreate,
    manager: AlertManager = Depends(get_alert_manager),
):
    """Attach a response action; automated actions run immediately"""
    try:
        action_id = await manager.add_response_action(alert_id, body)
    except AlertNotFoundError as e:
        raise _not_found(e)
    return CreatedResponse(id=action_id)


@router.post("/{alert_id}/actions/{action_id}/execute", response_model=ResponseAction)
async def execute_response_action(
    alert_id: str,
    action_id: str,
    body: ExecuteActionRequest,
    manager: AlertManager = Depends(get_alert_manager),
):
    try:
        return await manager.execute_response_action(alert_id, action_id, body.actor)
    except (AlertNotFoundError, ResponseActionNotFoundError) as e:
        raise _not_found(e)
