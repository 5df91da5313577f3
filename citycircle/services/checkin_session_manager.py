"""
Check-in session lifecycle.

ACTIVE → COMPLETED when the customer ends the visit (final CIV computed) or
ACTIVE → EXPIRED once expires_at has passed. Expiry is detected lazily on
every access and by expire_stale() from the sweep job; either way it is
persisted before the caller sees an error.

State transitions are conditional UPDATEs (WHERE status = 'ACTIVE') so two
requests racing on the same session cannot both win.
"""
import logging
from datetime import datetime, timedelta, timezone
from math import isfinite
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..errors import ConflictError, InvalidArgumentError, InvalidStateError, NotFoundError
from ..models import CheckInSession, CheckInSessionStatus, LocationSample
from .civ_scorer import LocationFix, order_samples, score_samples
from .collaborators import SqlStoreDirectory, StoreDirectory
from .geo import is_valid_coordinate

logger = logging.getLogger(__name__)


class CheckInSessionManager:
    """Opens, feeds, completes and expires check-in sessions."""

    def __init__(
        self,
        store_directory: Optional[StoreDirectory] = None,
        clock: Clock = utcnow,
        ttl: Optional[timedelta] = None,
        max_clock_skew: Optional[timedelta] = None,
    ):
        self.store_directory = store_directory or SqlStoreDirectory()
        self.clock = clock
        self.ttl = ttl or settings.checkin_session_ttl
        self.max_clock_skew = max_clock_skew or timedelta(seconds=settings.MAX_CLIENT_CLOCK_SKEW_SECONDS)

    # ─── Lookup ───────────────────────────────────────────────────────

    def _expire_one(self, db: Session, session: CheckInSession, now: datetime) -> None:
        updated = db.query(CheckInSession).filter(
            CheckInSession.id == session.id,
            CheckInSession.status == CheckInSessionStatus.ACTIVE,
        ).update(
            {CheckInSession.status: CheckInSessionStatus.EXPIRED, CheckInSession.expired_at: now},
            synchronize_session=False,
        )
        db.commit()
        db.refresh(session)
        if updated:
            logger.info(f"Check-in session {session.id} expired (user {session.user_id}, store {session.store_id})")

    def get(self, db: Session, session_id: str) -> CheckInSession:
        """Load a session, applying expiry if its TTL has passed."""
        session = db.query(CheckInSession).filter(CheckInSession.id == session_id).first()
        if not session:
            raise NotFoundError(f"Check-in session {session_id} not found", session_id=session_id)

        if session.status == CheckInSessionStatus.ACTIVE and self.clock() > session.expires_at:
            self._expire_one(db, session, self.clock())
        return session

    def _require_active(self, db: Session, session_id: str) -> CheckInSession:
        session = self.get(db, session_id)
        if session.status != CheckInSessionStatus.ACTIVE:
            raise InvalidStateError(
                f"Check-in session {session_id} is {session.status.value}",
                session_id=session_id,
                status=session.status.value,
            )
        return session

    def find_active(self, db: Session, user_id: int, store_id: int) -> Optional[CheckInSession]:
        return db.query(CheckInSession).filter(
            CheckInSession.user_id == user_id,
            CheckInSession.store_id == store_id,
            CheckInSession.status == CheckInSessionStatus.ACTIVE,
        ).first()

    # ─── Lifecycle ────────────────────────────────────────────────────

    def open(self, db: Session, user_id: int, store_id: int, *, auto_commit: bool = True) -> CheckInSession:
        """
        Open a new ACTIVE session for (user, store).

        Raises ConflictError if one is already ACTIVE and unexpired. A stale
        ACTIVE session is expired first so the customer is not locked out.
        """
        now = self.clock()
        existing = self.find_active(db, user_id, store_id)
        if existing:
            if now <= existing.expires_at:
                raise ConflictError(
                    f"User {user_id} already has an active check-in at store {store_id}",
                    session_id=existing.id,
                )
            self._expire_one(db, existing, now)

        session = CheckInSession(
            user_id=user_id,
            store_id=store_id,
            status=CheckInSessionStatus.ACTIVE,
            opened_at=now,
            expires_at=now + self.ttl,
        )
        db.add(session)
        try:
            db.flush()
        except IntegrityError:
            # Lost a race with a concurrent open for the same pair
            db.rollback()
            raise ConflictError(f"User {user_id} already has an active check-in at store {store_id}")

        if auto_commit:
            db.commit()
            db.refresh(session)

        logger.info(f"Opened check-in session {session.id} for user {user_id} at store {store_id}")
        return session

    def normalize_fix(self, fix: LocationFix, received_at: datetime) -> LocationFix:
        """Validate a client fix and pin its timestamp to something plausible."""
        if not is_valid_coordinate(fix.lat, fix.lng):
            raise InvalidArgumentError("Invalid coordinates", lat=fix.lat, lng=fix.lng)

        accuracy = fix.accuracy_m
        if accuracy is not None:
            if isinstance(accuracy, bool) or not isinstance(accuracy, (int, float)) or not isfinite(accuracy) or accuracy < 0:
                raise InvalidArgumentError("accuracy_m must be a non-negative number", accuracy_m=accuracy)

        captured_at = fix.captured_at
        if captured_at is not None and captured_at.tzinfo is not None:
            captured_at = captured_at.astimezone(timezone.utc).replace(tzinfo=None)
        # Clients claiming the future get the server's receive time instead
        if captured_at is None or captured_at > received_at + self.max_clock_skew:
            captured_at = received_at

        return LocationFix(lat=float(fix.lat), lng=float(fix.lng), accuracy_m=accuracy, captured_at=captured_at)

    def append_sample(
        self, db: Session, session_id: str, fix: LocationFix, *, auto_commit: bool = True
    ) -> LocationSample:
        """
        Append a location sample to an ACTIVE session.

        Samples are stored in arrival order and sorted by captured_at on read.
        """
        session = self._require_active(db, session_id)
        now = self.clock()
        normalized = self.normalize_fix(fix, now)

        sample = LocationSample(
            session_id=session.id,
            lat=normalized.lat,
            lng=normalized.lng,
            accuracy_m=normalized.accuracy_m,
            captured_at=normalized.captured_at,
            received_at=now,
        )
        db.add(sample)
        if auto_commit:
            db.commit()
            db.refresh(sample)
        else:
            db.flush()
        return sample

    def samples_for(self, db: Session, session_id: str) -> List[LocationSample]:
        """Samples in scoring order (captured_at, then insertion id)."""
        samples = db.query(LocationSample).filter(LocationSample.session_id == session_id).all()
        return order_samples(samples)

    def sample_count(self, db: Session, session_id: str) -> int:
        return db.query(LocationSample).filter(LocationSample.session_id == session_id).count()

    def complete(self, db: Session, session_id: str, *, auto_commit: bool = True) -> float:
        """Score the session's samples, mark it COMPLETED and return the CIV score."""
        session = self._require_active(db, session_id)
        store = self.store_directory.get_store(db, session.store_id)
        civ = score_samples(
            self.samples_for(db, session_id),
            store.lat,
            store.lng,
            geofence_radius_m=store.geofence_radius_m,
        )

        now = self.clock()
        updated = db.query(CheckInSession).filter(
            CheckInSession.id == session_id,
            CheckInSession.status == CheckInSessionStatus.ACTIVE,
            CheckInSession.expires_at >= now,
        ).update(
            {
                CheckInSession.status: CheckInSessionStatus.COMPLETED,
                CheckInSession.completed_at: now,
                CheckInSession.civ_score: civ,
            },
            synchronize_session=False,
        )
        if not updated:
            # Completed or expired by someone else between our read and write
            db.rollback()
            session = self.get(db, session_id)
            raise InvalidStateError(
                f"Check-in session {session_id} is {session.status.value}",
                session_id=session_id,
                status=session.status.value,
            )

        if auto_commit:
            db.commit()
        else:
            db.flush()
        db.refresh(session)

        logger.info(f"Completed check-in session {session_id} with CIV {civ:.3f}")
        return civ

    def expire_stale(self, db: Session) -> int:
        """Batch ACTIVE → EXPIRED for every session past expires_at. Returns rows transitioned."""
        now = self.clock()
        count = db.query(CheckInSession).filter(
            CheckInSession.status == CheckInSessionStatus.ACTIVE,
            CheckInSession.expires_at < now,
        ).update(
            {CheckInSession.status: CheckInSessionStatus.EXPIRED, CheckInSession.expired_at: now},
            synchronize_session=False,
        )
        db.commit()
        if count:
            logger.info(f"Expired {count} stale check-in sessions")
        return count

    def has_visit_after(
        self,
        db: Session,
        user_id: int,
        store_id: int,
        after: datetime,
        exclude_session_id: Optional[str] = None,
    ) -> Optional[CheckInSession]:
        """Earliest session at the store opened at or after `after`, any status."""
        query = db.query(CheckInSession).filter(
            CheckInSession.user_id == user_id,
            CheckInSession.store_id == store_id,
            CheckInSession.opened_at >= after,
        )
        if exclude_session_id:
            query = query.filter(CheckInSession.id != exclude_session_id)
        return query.order_by(CheckInSession.opened_at.asc()).first()
