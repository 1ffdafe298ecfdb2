"""HTTP API for registering and inspecting task schedules."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from agentflow.core.clock import SystemClock, as_utc
from agentflow.core.errors import AgentflowError, NotFoundError, ValidationError
from agentflow.core.models import Task
from agentflow.runtime import get_clock, get_registry, get_store
from agentflow.scheduling import cron
from agentflow.scheduling.registry import JobStatus, ScheduleRegistry
from agentflow.storage.base import Store

from .errors import http_error

router = APIRouter(prefix="/tasks/schedule", tags=["schedule"])


class ScheduleRequest(BaseModel):
    task_id: str = Field(..., description="Task to schedule")
    schedule: Optional[str] = Field(None, description="Five-field cron expression")
    scheduled_for: Optional[datetime] = Field(None, description="One-shot trigger instant")
    is_recurring: bool = False
    agent_id: Optional[str] = Field(None, description="Agent to assign the task to")


class SchedulerStatus(BaseModel):
    is_scheduled: bool
    is_active: bool


class ScheduledTaskResponse(BaseModel):
    task_id: str
    title: str
    status: str
    schedule: Optional[str]
    scheduled_for: Optional[datetime]
    is_recurring: bool
    assigned_agent_id: Optional[str]
    last_run: Optional[datetime]
    scheduler_status: SchedulerStatus

    @classmethod
    def from_task(cls, task: Task, job: JobStatus) -> "ScheduledTaskResponse":
        return cls(
            task_id=task.id,
            title=task.title,
            status=task.status.value,
            schedule=task.schedule,
            scheduled_for=task.scheduled_for,
            is_recurring=task.is_recurring,
            assigned_agent_id=task.assigned_agent_id,
            last_run=task.last_run,
            scheduler_status=SchedulerStatus(is_scheduled=job.is_scheduled, is_active=job.is_active),
        )


class ScheduleResponse(BaseModel):
    task: ScheduledTaskResponse
    message: str


@router.get("", response_model=List[ScheduledTaskResponse])
async def list_scheduled_tasks(
    store: Store = Depends(get_store),
    registry: ScheduleRegistry = Depends(get_registry),
) -> List[ScheduledTaskResponse]:
    try:
        tasks = await store.list_scheduled_tasks()
    except AgentflowError as exc:
        raise http_error(exc) from exc
    return [ScheduledTaskResponse.from_task(task, registry.status(task.id)) for task in tasks]


@router.post("", response_model=ScheduleResponse)
async def schedule_task(
    request: ScheduleRequest,
    store: Store = Depends(get_store),
    registry: ScheduleRegistry = Depends(get_registry),
    clock: SystemClock = Depends(get_clock),
) -> ScheduleResponse:
    try:
        if request.schedule is not None and not cron.validate(request.schedule):
            raise ValidationError(f"Invalid cron expression: {request.schedule!r}")
        if await store.get_task(request.task_id) is None:
            raise NotFoundError("Task", request.task_id)
        if request.agent_id is not None and await store.get_agent(request.agent_id) is None:
            raise NotFoundError("Agent", request.agent_id)

        # A recurring expression must have a next instant before anything is stored.
        next_fire = None
        if request.schedule and request.is_recurring:
            next_fire = cron.next_run(request.schedule, clock.now())

        changes: Dict[str, Any] = {"is_recurring": request.is_recurring}
        if request.schedule is not None:
            changes["schedule"] = request.schedule
        if request.scheduled_for is not None:
            changes["scheduled_for"] = as_utc(request.scheduled_for)
        elif next_fire is not None:
            changes["scheduled_for"] = next_fire
        if request.agent_id is not None:
            changes["assigned_agent_id"] = request.agent_id

        task = await store.update_task(request.task_id, **changes)
    except AgentflowError as exc:
        raise http_error(exc) from exc

    if task.schedule and task.is_recurring:
        if not registry.schedule(task.id, task.schedule):
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to schedule task with cron expression",
            )
    else:
        registry.unschedule(task.id)

    return ScheduleResponse(
        task=ScheduledTaskResponse.from_task(task, registry.status(task.id)),
        message="Task scheduled successfully",
    )


@router.delete("/{task_id}", response_model=ScheduleResponse)
async def unschedule_task(
    task_id: str,
    store: Store = Depends(get_store),
    registry: ScheduleRegistry = Depends(get_registry),
) -> ScheduleResponse:
    try:
        task = await store.update_task(task_id, schedule=None, scheduled_for=None, is_recurring=False)
    except AgentflowError as exc:
        raise http_error(exc) from exc
    removed = registry.unschedule(task_id)
    return ScheduleResponse(
        task=ScheduledTaskResponse.from_task(task, registry.status(task_id)),
        message="Task unscheduled" if removed else "Task had no active schedule",
    )
