"""
Hybrid Check-in Router: /v1/checkin/*

Customer-facing endpoints: scan a store code, stream location fixes, end the
visit, list pending Loops and ask for settlement.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..dependencies.auth import get_current_user_id
from ..models import PendingPointsEntry, SettlementTriggerType
from ..services.checkin_orchestrator import CheckInOrchestrator, get_checkin_orchestrator
from ..services.settlement_engine import SettlementResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/checkin", tags=["checkin"])


# ─── Request/Response Models ──────────────────────────────────────────

class CheckInRequest(BaseModel):
    scanned_code: str = Field(..., min_length=1, max_length=200)
    lat: Optional[float] = None
    lng: Optional[float] = None
    accuracy_m: Optional[float] = None


class CheckInResponse(BaseModel):
    session_id: str
    store_id: int
    pending_points_id: str
    loops_pending: int
    expires_at: str
    # Older entries at this store settled by this visit
    settled_entries: int = 0
    loops_credited: int = 0


class LocationUpdateRequest(BaseModel):
    lat: float
    lng: float
    accuracy_m: Optional[float] = None
    captured_at: Optional[datetime] = None


class LocationAckResponse(BaseModel):
    session_id: str
    status: str
    accepted: bool
    sample_count: int


class CompleteCheckInResponse(BaseModel):
    session_id: str
    civ_score: float
    loops_pending: int


class PendingPointsItem(BaseModel):
    id: str
    store_id: int
    session_id: Optional[str] = None
    loops_pending: int
    civ_score: float
    status: str
    created_at: str
    expires_at: str


class PendingPointsResponse(BaseModel):
    entries: List[PendingPointsItem]
    total_pending: int


class SettlementRequest(BaseModel):
    store_id: Optional[int] = None
    trigger_type: Optional[SettlementTriggerType] = None


class UnlockedEntry(BaseModel):
    id: str
    store_id: int
    loops_unlocked: int
    unlock_trigger: Optional[str] = None
    unlocked_at: Optional[str] = None


class SettlementResponse(BaseModel):
    unlocked_entries: List[UnlockedEntry]
    total_credited: int


# ─── Helper Functions ─────────────────────────────────────────────────

def _to_pending_item(entry: PendingPointsEntry) -> PendingPointsItem:
    return PendingPointsItem(
        id=entry.id,
        store_id=entry.store_id,
        session_id=entry.session_id,
        loops_pending=entry.loops_pending,
        civ_score=entry.civ_score,
        status=entry.status.value,
        created_at=entry.created_at.isoformat(),
        expires_at=entry.expires_at.isoformat(),
    )


def to_settlement_response(result: SettlementResult) -> SettlementResponse:
    return SettlementResponse(
        unlocked_entries=[
            UnlockedEntry(
                id=entry.id,
                store_id=entry.store_id,
                loops_unlocked=entry.loops_unlocked,
                unlock_trigger=entry.unlock_trigger.value if entry.unlock_trigger else None,
                unlocked_at=entry.unlocked_at.isoformat() if entry.unlocked_at else None,
            )
            for entry in result.unlocked_entries
        ],
        total_credited=result.total_credited,
    )


# ─── Endpoints ────────────────────────────────────────────────────────

@router.post("", response_model=CheckInResponse, status_code=201)
def check_in(
    request: CheckInRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator: CheckInOrchestrator = Depends(get_checkin_orchestrator),
):
    """Scan a store code: opens a check-in session and grants pending Loops."""
    result = orchestrator.check_in(
        db,
        user_id,
        request.scanned_code,
        lat=request.lat,
        lng=request.lng,
        accuracy_m=request.accuracy_m,
    )
    settlement = result.settlement or SettlementResult()
    return CheckInResponse(
        session_id=result.session_id,
        store_id=result.store_id,
        pending_points_id=result.pending_points_id,
        loops_pending=result.loops_pending,
        expires_at=result.expires_at.isoformat(),
        settled_entries=len(settlement.unlocked_entries),
        loops_credited=settlement.total_credited,
    )


@router.get("/pending-points", response_model=PendingPointsResponse)
def list_pending_points(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator: CheckInOrchestrator = Depends(get_checkin_orchestrator),
):
    entries = orchestrator.list_pending_points(db, user_id)
    return PendingPointsResponse(
        entries=[_to_pending_item(entry) for entry in entries],
        total_pending=sum(entry.loops_pending for entry in entries),
    )


@router.post("/settlement", response_model=SettlementResponse)
def check_settlement(
    request: SettlementRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator: CheckInOrchestrator = Depends(get_checkin_orchestrator),
):
    """Settle pending Loops the available evidence supports. Nothing to settle is not an error."""
    result = orchestrator.check_settlement(
        db,
        user_id,
        store_id=request.store_id,
        trigger_type=request.trigger_type,
    )
    return to_settlement_response(result)


@router.post("/{session_id}/location", response_model=LocationAckResponse)
def update_location(
    session_id: str,
    request: LocationUpdateRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator: CheckInOrchestrator = Depends(get_checkin_orchestrator),
):
    ack = orchestrator.update_location(
        db,
        user_id,
        session_id,
        request.lat,
        request.lng,
        accuracy_m=request.accuracy_m,
        captured_at=request.captured_at,
    )
    return LocationAckResponse(
        session_id=ack.session_id,
        status=ack.status.value,
        accepted=ack.accepted,
        sample_count=ack.sample_count,
    )


@router.post("/{session_id}/complete", response_model=CompleteCheckInResponse)
def complete_check_in(
    session_id: str,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator: CheckInOrchestrator = Depends(get_checkin_orchestrator),
):
    result = orchestrator.complete_check_in(db, user_id, session_id)
    return CompleteCheckInResponse(
        session_id=result.session_id,
        civ_score=round(result.civ_score, 4),
        loops_pending=result.loops_pending,
    )
