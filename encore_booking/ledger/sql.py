"""
Relational booking ledger backed by SQLAlchemy.

Create-time serialization: inside one transaction the expert's calendar row
is locked (``SELECT ... FOR UPDATE`` on databases that support it) and its
version bumped, the expert's slot-holding bookings are re-read, and the new
row is inserted. Concurrent creates for the same expert therefore queue on
the calendar row, across processes as well as threads. Within one process
an additional per-expert mutex keeps SQLite, which ignores ``FOR UPDATE``,
from interleaving the read and the insert.

The calendar row itself is created up front in a separate transaction, so
two processes racing on an expert's first booking never both insert it.

Transitions are a conditional ``UPDATE ... WHERE id = :id AND status =
:expected``; zero affected rows means another writer got there first.
"""

import logging
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from encore_booking.errors import BookingNotFound, SlotUnavailable, StateConflictError, ValidationError
from encore_booking.ledger.base import (
    BookingLedger,
    ConflictCheck,
    ExpertLocks,
    apply_transition,
    ensure_insertable,
)
from encore_booking.schemas.booking_schema import SLOT_HOLDING_STATUSES, Booking, BookingStatus

logger = logging.getLogger(__name__)

Base = declarative_base()

_HOLDING_VALUES = [s.value for s in SLOT_HOLDING_STATUSES]


class BookingRow(Base):
    """Persisted booking record. Never deleted; cancelled rows stay for history."""

    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("scheduled_end > scheduled_start", name="ck_bookings_schedule_order"),
        CheckConstraint("expert_net_cents <= price_cents_total", name="ck_bookings_net_le_total"),
        CheckConstraint("commission_pct >= 0 AND commission_pct <= 100", name="ck_bookings_commission"),
        CheckConstraint(
            "status IN ('requested', 'confirmed', 'in_progress', 'completed', 'cancelled')",
            name="ck_bookings_status",
        ),
        Index("ix_bookings_expert_status", "expert_id", "status"),
    )

    id = Column(String(36), primary_key=True)
    client_id = Column(String(64), nullable=False, index=True)
    expert_id = Column(String(64), nullable=False)
    mode = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)

    scheduled_start = Column(DateTime(timezone=True), nullable=False)
    scheduled_end = Column(DateTime(timezone=True), nullable=False)
    actual_start = Column(DateTime(timezone=True), nullable=True)
    actual_end = Column(DateTime(timezone=True), nullable=True)

    price_cents_total = Column(Integer, nullable=False)
    commission_pct = Column(Float, nullable=False)
    expert_net_cents = Column(Integer, nullable=False)
    rate_cents_per_minute = Column(Numeric(12, 4), nullable=True)
    rush_applied = Column(Boolean, nullable=False, default=False)
    currency = Column(String(3), nullable=False)
    authorization_id = Column(String(255), nullable=False, comment="Payment provider authorization handle")
    captured_cents = Column(Integer, nullable=True)

    category_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<BookingRow {self.id} expert={self.expert_id} status={self.status}>"


class ExpertCalendarRow(Base):
    """One row per expert; locking it serializes writes to that expert's calendar."""

    __tablename__ = "expert_calendars"

    expert_id = Column(String(64), primary_key=True)
    version = Column(Integer, nullable=False, default=0)


_BOOKING_COLUMNS = [c.name for c in BookingRow.__table__.columns]


def _row_values(booking: Booking) -> dict[str, Any]:
    values = booking.model_dump()
    values["mode"] = booking.mode.value
    values["status"] = booking.status.value
    return values


def _to_booking(row: BookingRow) -> Booking:
    return Booking.model_validate({name: getattr(row, name) for name in _BOOKING_COLUMNS})


def create_ledger_engine(database_url: str, echo: bool = False) -> Engine:
    """Engine with the connect args the ledger needs for its dialect."""
    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=echo, connect_args=connect_args)


class SqlBookingLedger(BookingLedger):
    """Ledger over any SQLAlchemy-supported relational database."""

    def __init__(self, engine: Engine, create_schema: bool = True) -> None:
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self._locks = ExpertLocks()
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlBookingLedger":
        return cls(create_ledger_engine(database_url))

    def get(self, booking_id: str) -> Optional[Booking]:
        with self._sessions() as session:
            row = session.get(BookingRow, booking_id)
            return _to_booking(row) if row is not None else None

    def _holding(self, session: Session, expert_id: str) -> list[Booking]:
        rows = session.scalars(
            select(BookingRow)
            .where(BookingRow.expert_id == expert_id, BookingRow.status.in_(_HOLDING_VALUES))
            .order_by(BookingRow.scheduled_start)
        )
        return [_to_booking(row) for row in rows]

    def snapshot_for_expert(self, expert_id: str) -> list[Booking]:
        with self._sessions() as session:
            return self._holding(session, expert_id)

    def list_for_party(
        self,
        party_id: str,
        status: Optional[BookingStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Booking]:
        query = select(BookingRow).where(
            or_(BookingRow.client_id == party_id, BookingRow.expert_id == party_id)
        )
        if status is not None:
            query = query.where(BookingRow.status == status.value)
        query = query.order_by(BookingRow.scheduled_start.desc()).limit(limit).offset(offset)
        with self._sessions() as session:
            return [_to_booking(row) for row in session.scalars(query)]

    def list_by_status(self, status: BookingStatus) -> list[Booking]:
        query = (
            select(BookingRow)
            .where(BookingRow.status == status.value)
            .order_by(BookingRow.scheduled_start)
        )
        with self._sessions() as session:
            return [_to_booking(row) for row in session.scalars(query)]

    def _ensure_calendar(self, expert_id: str) -> None:
        """Create the expert's calendar row in its own transaction if it is missing."""
        try:
            with self._sessions.begin() as session:
                if session.get(ExpertCalendarRow, expert_id) is None:
                    session.add(ExpertCalendarRow(expert_id=expert_id, version=0))
        except IntegrityError:
            logger.debug("Calendar row for expert %s created by another writer", expert_id)

    def _lock_calendar(self, session: Session, expert_id: str) -> None:
        calendar = session.execute(
            select(ExpertCalendarRow)
            .where(ExpertCalendarRow.expert_id == expert_id)
            .with_for_update()
        ).scalar_one()
        calendar.version += 1
        session.flush()

    def create_if_available(
        self, booking: Booking, conflict_check: Optional[ConflictCheck] = None
    ) -> Booking:
        with self._locks.hold(booking.expert_id):
            self._ensure_calendar(booking.expert_id)
            try:
                with self._sessions.begin() as session:
                    self._lock_calendar(session, booking.expert_id)
                    if session.get(BookingRow, booking.id) is not None:
                        raise ValidationError(f"Booking {booking.id} already exists")
                    ensure_insertable(booking, self._holding(session, booking.expert_id), conflict_check)
                    session.add(BookingRow(**_row_values(booking)))
            except IntegrityError as exc:
                logger.warning("Insert of booking %s lost to a concurrent writer", booking.id)
                raise SlotUnavailable(
                    f"Slot for expert {booking.expert_id} was taken concurrently",
                    details={"expert_id": booking.expert_id},
                ) from exc
        logger.info(
            "Booking %s stored for expert %s (%s - %s)",
            booking.id, booking.expert_id,
            booking.scheduled_start.isoformat(), booking.scheduled_end.isoformat(),
        )
        return booking

    def transition(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        new_status: BookingStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> Booking:
        with self._sessions.begin() as session:
            row = session.get(BookingRow, booking_id)
            if row is None:
                raise BookingNotFound(f"Booking {booking_id} not found", details={"booking_id": booking_id})
            current = _to_booking(row)
            if current.status != expected_status:
                raise StateConflictError(
                    f"Booking {booking_id} is '{current.status.value}', "
                    f"expected '{expected_status.value}'",
                    current_status=current.status.value,
                )
            updated = apply_transition(current, new_status, fields)

            changed = {name: _row_values(updated)[name] for name in ["status", *(fields or {})]}
            result = session.execute(
                update(BookingRow)
                .where(BookingRow.id == booking_id, BookingRow.status == expected_status.value)
                .values(**changed)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.expire(row)
                latest = session.get(BookingRow, booking_id)
                raise StateConflictError(
                    f"Booking {booking_id} changed during transition to '{new_status.value}'",
                    current_status=latest.status if latest is not None else None,
                )
        logger.debug("Booking %s: %s -> %s", booking_id, expected_status.value, new_status.value)
        return updated
