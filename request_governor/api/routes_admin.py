from __future__ import annotations

from fastapi import APIRouter, Depends

from ..context import GovernanceContext
from ..schemas import (
    AccessDecision,
    Action,
    CacheStats,
    GovernanceStatus,
    InvalidateRequest,
    InvalidateResponse,
    UnblockResponse,
)
from .dependencies import get_context, require_permission

router = APIRouter(prefix="/admin/governance", tags=["governance"])

require_system_admin = require_permission("system", Action.ADMIN, default_resource_id="governance")


@router.get("/status", response_model=GovernanceStatus)
def get_status(
    _decision: AccessDecision = Depends(require_system_admin),
    context: GovernanceContext = Depends(get_context),
) -> GovernanceStatus:
    """Table sizes for the cache, rate windows, blocks and audit queue."""
    return context.status()


@router.delete("/blocks/{identifier}", response_model=UnblockResponse)
def unblock_identifier(
    identifier: str,
    decision: AccessDecision = Depends(require_system_admin),
    context: GovernanceContext = Depends(get_context),
) -> UnblockResponse:
    """Lift a block early and reset the identifier's suspicion count."""
    unblocked = context.limiters.unblock(identifier)
    context.events.log_action(
        decision.actor_id, "GOVERNANCE_UNBLOCK", "system", identifier, {"unblocked": unblocked},
    )
    return UnblockResponse(identifier=identifier, unblocked=unblocked)


@router.post("/cache/invalidate", response_model=InvalidateResponse)
def invalidate_cache(
    body: InvalidateRequest,
    _decision: AccessDecision = Depends(require_system_admin),
    context: GovernanceContext = Depends(get_context),
) -> InvalidateResponse:
    removed = context.cache.invalidate_pattern(body.pattern)
    return InvalidateResponse(pattern=body.pattern, invalidated=removed)


@router.post("/cache/clear", response_model=CacheStats)
def clear_cache(
    _decision: AccessDecision = Depends(require_system_admin),
    context: GovernanceContext = Depends(get_context),
) -> CacheStats:
    context.cache.clear_all()
    return context.cache.stats()
