"""HTTP API exposing metrics, alerts and the health verdict."""
from __future__ import annotations

import dataclasses
from enum import Enum
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from agentflow.monitoring.alerts import AlertEngine, HealthState
from agentflow.monitoring.metrics import MetricsCollector
from agentflow.runtime import get_alerts, get_metrics

router = APIRouter(prefix="/monitoring", tags=["monitoring"])


class MetricsType(str, Enum):
    SYSTEM = "system"
    APPLICATION = "application"
    CURRENT = "current"
    ALL = "all"


class AlertAction(str, Enum):
    RESOLVE = "resolve"


class AlertUpdateRequest(BaseModel):
    alert_id: str = Field(..., description="Alert to act on")
    action: str = Field(..., description="Only 'resolve' is supported")


def _jsonable(value: Any) -> Any:
    if value is None:
        return None
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    return value


@router.get("/metrics")
async def get_metrics_view(
    type: MetricsType = Query(MetricsType.ALL),
    limit: int = Query(100, ge=1, le=1000),
    metrics: MetricsCollector = Depends(get_metrics),
) -> Dict[str, Any]:
    if type is MetricsType.SYSTEM:
        return {"system": [_jsonable(s) for s in metrics.system_metrics(limit)]}
    if type is MetricsType.APPLICATION:
        return {"application": [_jsonable(s) for s in metrics.application_metrics(limit)]}
    current = metrics.current()
    if type is MetricsType.CURRENT:
        return {"system": _jsonable(current.system), "application": _jsonable(current.application)}
    return {
        "current": {"system": _jsonable(current.system), "application": _jsonable(current.application)},
        "system": [_jsonable(s) for s in metrics.system_metrics(limit)],
        "application": [_jsonable(s) for s in metrics.application_metrics(limit)],
    }


@router.get("/alerts")
async def list_alerts(
    limit: int = Query(100, ge=1, le=1000),
    unresolved: bool = Query(False),
    alerts: AlertEngine = Depends(get_alerts),
) -> List[Dict[str, Any]]:
    return [dataclasses.asdict(alert) for alert in alerts.alerts(limit=limit, unresolved_only=unresolved)]


@router.patch("/alerts")
async def update_alert(
    request: AlertUpdateRequest,
    alerts: AlertEngine = Depends(get_alerts),
) -> Dict[str, Any]:
    if request.action != AlertAction.RESOLVE.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid action")
    if not alerts.resolve(request.alert_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found or already resolved"
        )
    return {"message": "Alert resolved successfully"}


@router.get("/health")
async def health_status(
    response: Response,
    alerts: AlertEngine = Depends(get_alerts),
) -> Dict[str, Any]:
    report = alerts.health_status()
    if report.status is HealthState.ERROR:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return dataclasses.asdict(report)
