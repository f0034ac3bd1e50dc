"""HTTP API for budgets and cost analytics."""
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from fleet.core.models import Budget, BudgetPeriod, ScopeKind
from fleet.runtime import get_ledger
from fleet.services.budget import BudgetLedger

router = APIRouter(prefix="/budgets", tags=["budgets"])
costs_router = APIRouter(prefix="/costs", tags=["costs"])


class BudgetRequest(BaseModel):
    limit: float = Field(..., ge=0, description="Spend limit in USD per period")
    period: BudgetPeriod = BudgetPeriod.DAILY
    alert_threshold: Optional[float] = Field(None, gt=0, le=1)
    scope_kind: ScopeKind = ScopeKind.WORKER


class BudgetResponse(BaseModel):
    scope_id: str
    scope_kind: str
    limit: float
    period: str
    current_spent: float
    remaining: float
    period_start: datetime
    alert_threshold: float
    alert_sent: bool

    @classmethod
    def from_budget(cls, budget: Budget) -> "BudgetResponse":
        return cls(
            scope_id=budget.scope_id,
            scope_kind=budget.scope_kind.value,
            limit=budget.limit,
            period=budget.period.value,
            current_spent=budget.current_spent,
            remaining=budget.remaining,
            period_start=budget.period_start,
            alert_threshold=budget.alert_threshold,
            alert_sent=budget.alert_sent,
        )


@router.get("", response_model=List[BudgetResponse])
async def list_budgets(ledger: BudgetLedger = Depends(get_ledger)) -> List[BudgetResponse]:
    return [BudgetResponse.from_budget(budget) for budget in ledger.list_budgets()]


@router.put("/{scope_id}", response_model=BudgetResponse)
async def set_budget(
    scope_id: str, request: BudgetRequest, ledger: BudgetLedger = Depends(get_ledger)
) -> BudgetResponse:
    budget = ledger.set_budget(
        scope_id, request.limit, request.period, request.alert_threshold, request.scope_kind
    )
    return BudgetResponse.from_budget(budget)


@router.get("/{scope_id}", response_model=BudgetResponse)
async def get_budget(scope_id: str, ledger: BudgetLedger = Depends(get_ledger)) -> BudgetResponse:
    budget = ledger.get_budget(scope_id)
    if budget is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown budget scope")
    return BudgetResponse.from_budget(budget)


@costs_router.get("/breakdown")
async def cost_breakdown(
    worker_id: Optional[str] = None,
    period: BudgetPeriod = BudgetPeriod.DAILY,
    ledger: BudgetLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    return ledger.cost_breakdown(worker_id, period)


@costs_router.get("/timeline")
async def cost_timeline(
    worker_id: Optional[str] = None,
    days: int = 7,
    ledger: BudgetLedger = Depends(get_ledger),
) -> List[Dict[str, Any]]:
    return ledger.cost_timeline(worker_id, days)


@costs_router.get("/anomalies")
async def cost_anomalies(
    worker_id: Optional[str] = None,
    threshold: Optional[float] = None,
    ledger: BudgetLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    return asdict(ledger.detect_anomalies(worker_id, threshold))


@costs_router.get("/optimizations")
async def cost_optimizations(ledger: BudgetLedger = Depends(get_ledger)) -> List[Dict[str, Any]]:
    return [asdict(item) for item in ledger.optimization_suggestions()]
