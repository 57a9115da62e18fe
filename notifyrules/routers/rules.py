from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from notifyrules.db.models import RuleHealth
from notifyrules.db.session import get_sync_session
from notifyrules.services.rules import RuleService
from notifyrules.utils.responses import ResponseBuilder

rules_router = APIRouter()


@rules_router.get("/status")
async def list_rule_statuses(
    request: Request,
    db: Annotated[Session, Depends(get_sync_session)],
    health: Optional[RuleHealth] = Query(default=None),
):
    """
    List the scheduling status of every rule.

    Filter with ``health=config_error`` to find rules that stopped being
    evaluated because of a configuration error.
    """
    statuses = RuleService(db).list_rule_statuses(health)
    return ResponseBuilder.success(
        request=request,
        data=[item.model_dump(by_alias=True) for item in statuses],
        meta={"total": len(statuses)},
        message="Rule statuses retrieved successfully",
    )


@rules_router.get("/{rule_id}/status")
async def get_rule_status(
    rule_id: int,
    request: Request,
    db: Annotated[Session, Depends(get_sync_session)],
):
    """Scheduling status of a single rule"""
    rule_status = RuleService(db).get_rule_status(rule_id)
    return ResponseBuilder.success(
        request=request,
        data=rule_status.model_dump(by_alias=True),
        message="Rule status retrieved successfully",
    )
