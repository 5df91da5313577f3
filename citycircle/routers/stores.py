"""
Store Router: /v1/stores/*

Store-side endpoints. Recording a purchase doubles as a NEW_TRANSACTION
settlement trigger for the customer's pending Loops at that store.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..dependencies.auth import Principal, require_role
from ..services.checkin_orchestrator import CheckInOrchestrator, get_checkin_orchestrator
from .checkin import SettlementResponse, to_settlement_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/stores", tags=["stores"])


class RecordPurchaseRequest(BaseModel):
    user_id: int
    amount_cents: int = Field(..., gt=0)


@router.post("/{store_id}/transactions", response_model=SettlementResponse, status_code=201)
def record_purchase(
    store_id: int,
    request: RecordPurchaseRequest,
    principal: Principal = Depends(require_role("store")),
    db: Session = Depends(get_db),
    orchestrator: CheckInOrchestrator = Depends(get_checkin_orchestrator),
):
    """Record a purchase at the store and settle the pending Loops it confirms."""
    if principal.role != "admin" and principal.store_id != store_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token is not valid for this store"
        )

    result = orchestrator.record_purchase(db, store_id, request.user_id, request.amount_cents)
    return to_settlement_response(result)
