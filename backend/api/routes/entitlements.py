"""
Entitlement API routes.

Request handlers call these before performing a metered action: a probe
to decide whether to offer the action, then a reservation to consume one
unit. A refused reservation answers 402 Payment Required with the limit
notice the client renders.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from api.dependencies import get_entitlement_engine, get_plan_catalog, get_usage_ledger
from api.schemas.entitlements import (
    AccountCreateRequest,
    AccountUsageResponse,
    EntitlementDecisionResponse,
    LimitNotice,
    PlanChangeRequest,
    PlanListResponse,
    PlanTierResponse,
    UsageOverviewResponse,
)
from core.domain.subscription import AccountAlreadyExists, CheckMode, FeatureKind
from core.interfaces.repositories import UsageLedger
from core.plans import PlanCatalog
from services.entitlements import EntitlementEngine
from services.limit_notices import build_limit_notice

logger = logging.getLogger(__name__)

router = APIRouter(tags=["entitlements"])

Engine = Annotated[EntitlementEngine, Depends(get_entitlement_engine)]
Catalog = Annotated[PlanCatalog, Depends(get_plan_catalog)]
Ledger = Annotated[UsageLedger, Depends(get_usage_ledger)]


def _require_known_plan(catalog: PlanCatalog, plan_id: str) -> None:
    if plan_id not in catalog:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown plan: {plan_id}",
        )


@router.get("/plans", response_model=PlanListResponse)
async def list_plans(catalog: Catalog):
    """List subscription tiers ascending by monthly price."""
    return PlanListResponse(
        plans=[PlanTierResponse.from_tier(tier) for tier in catalog.list_tiers()]
    )


@router.post(
    "/accounts",
    response_model=AccountUsageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_account(request: AccountCreateRequest, catalog: Catalog, ledger: Ledger):
    """Open a usage record with every counter at zero."""
    _require_known_plan(catalog, request.plan_id)
    try:
        usage = await ledger.create_account(request.account_id, request.plan_id)
    except AccountAlreadyExists:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Account {request.account_id} already exists",
        )
    return AccountUsageResponse.from_usage(usage)


@router.get("/accounts/{account_id}/usage", response_model=UsageOverviewResponse)
async def get_usage_overview(account_id: str, engine: Engine):
    """Usage against limits for every metered feature."""
    overview = await engine.usage_overview(account_id)
    return UsageOverviewResponse.from_overview(overview)


@router.put("/accounts/{account_id}/plan", response_model=AccountUsageResponse)
async def change_plan(account_id: str, request: PlanChangeRequest, catalog: Catalog, ledger: Ledger):
    """Move an account to another tier, e.g. after a successful checkout."""
    _require_known_plan(catalog, request.plan_id)
    usage = await ledger.set_plan(account_id, request.plan_id)
    return AccountUsageResponse.from_usage(usage)


@router.post("/accounts/{account_id}/usage/reset", response_model=AccountUsageResponse)
async def reset_usage(account_id: str, ledger: Ledger):
    """Zero the counters at the start of a billing period."""
    usage = await ledger.reset_usage(account_id)
    return AccountUsageResponse.from_usage(usage)


@router.get(
    "/accounts/{account_id}/entitlements/{feature}",
    response_model=EntitlementDecisionResponse,
)
async def probe_entitlement(account_id: str, feature: FeatureKind, engine: Engine):
    """Evaluate whether the account may use a feature without consuming it."""
    decision = await engine.check_and_maybe_reserve(account_id, feature, CheckMode.PROBE)
    return EntitlementDecisionResponse.from_decision(decision)


@router.post(
    "/accounts/{account_id}/entitlements/{feature}/reserve",
    response_model=EntitlementDecisionResponse,
    responses={status.HTTP_402_PAYMENT_REQUIRED: {"model": LimitNotice}},
)
async def reserve_entitlement(account_id: str, feature: FeatureKind, engine: Engine):
    """Consume one unit of a feature, or answer 402 with a limit notice."""
    decision = await engine.check_and_maybe_reserve(account_id, feature, CheckMode.RESERVE)
    if not decision.allowed:
        notice = build_limit_notice(decision)
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=notice.model_dump(mode="json", by_alias=True),
        )
    return EntitlementDecisionResponse.from_decision(decision)
