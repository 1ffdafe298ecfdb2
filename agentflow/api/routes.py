"""HTTP API exposing agent performance and recovery controls."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from agentflow.core.errors import AgentflowError
from agentflow.core.payloads import PerformanceMetricsSnapshot
from agentflow.monitoring.performance import PerformanceAggregator, RankedAgent
from agentflow.orchestration.executor import ExecutionStateMachine
from agentflow.runtime import get_executor, get_performance

from .errors import http_error

router = APIRouter(prefix="/agents", tags=["agents"])


class AgentSummary(BaseModel):
    agent_id: str
    name: str
    type: str
    model: str
    status: str


class RankedAgentResponse(BaseModel):
    agent: AgentSummary
    metrics: PerformanceMetricsSnapshot

    @classmethod
    def from_ranked(cls, ranked: RankedAgent) -> "RankedAgentResponse":
        agent = ranked.agent
        return cls(
            agent=AgentSummary(
                agent_id=agent.id,
                name=agent.name,
                type=agent.type,
                model=agent.model,
                status=agent.status.value,
            ),
            metrics=ranked.metrics,
        )


class RankingsResponse(BaseModel):
    overall: int
    by_type: int
    by_model: int
    total_agents: int


class AgentPerformanceResponse(BaseModel):
    metrics: PerformanceMetricsSnapshot
    rankings: RankingsResponse


class AgentStatusResponse(BaseModel):
    agent_id: str
    status: str


@router.get("/performance", response_model=List[RankedAgentResponse])
async def top_agents(
    limit: int = Query(10, ge=1, le=100),
    metric: str = Query("performance_score"),
    performance: PerformanceAggregator = Depends(get_performance),
) -> List[RankedAgentResponse]:
    try:
        ranked = await performance.top_agents(limit=limit, metric=metric)
    except AgentflowError as exc:
        raise http_error(exc) from exc
    return [RankedAgentResponse.from_ranked(item) for item in ranked]


@router.get("/{agent_id}/performance", response_model=AgentPerformanceResponse)
async def agent_performance(
    agent_id: str,
    performance: PerformanceAggregator = Depends(get_performance),
) -> AgentPerformanceResponse:
    try:
        metrics = await performance.calculate(agent_id)
        rankings = await performance.rankings(agent_id)
    except AgentflowError as exc:
        raise http_error(exc) from exc
    return AgentPerformanceResponse(
        metrics=metrics,
        rankings=RankingsResponse(
            overall=rankings.overall,
            by_type=rankings.by_type,
            by_model=rankings.by_model,
            total_agents=rankings.total_agents,
        ),
    )


@router.post("/{agent_id}/clear-error", response_model=AgentStatusResponse)
async def clear_error(
    agent_id: str,
    executor: ExecutionStateMachine = Depends(get_executor),
) -> AgentStatusResponse:
    try:
        agent = await executor.clear_agent_error(agent_id)
    except AgentflowError as exc:
        raise http_error(exc) from exc
    return AgentStatusResponse(agent_id=agent.id, status=agent.status.value)
