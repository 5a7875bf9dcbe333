"""Appointment scheduling: status state machine and slot integrity.

Invariants owned here:
- For any (service_id, appointment_at) at most one appointment has an
  occupying status (PENDING or CONFIRMED).
- Status changes follow VALID_TRANSITIONS.
- Clients are identified by their normalized phone; a repeat booking under
  a known phone reuses the stored client and keeps its stored name.

The occupancy pre-check gives fast feedback; the partial unique index in
storage is the source of truth. A constraint violation at commit time is
reported as SlotConflict, exactly like a pre-check failure.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta, UTC
from typing import Callable, Dict, FrozenSet, List, Optional

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from stylebook.errors import (
    BusinessRuleError,
    InactiveService,
    InvalidTransition,
    NotFound,
    SlotConflict,
)
from stylebook.logging_config import get_logger
from stylebook.models import Appointment, AppointmentStatus, Client, ServiceCatalog, utc_now
from stylebook.phone import normalize_phone

logger = get_logger(__name__)

OCCUPYING_STATUSES: FrozenSet[AppointmentStatus] = frozenset({
    AppointmentStatus.PENDING,
    AppointmentStatus.CONFIRMED,
})

# State machine transition map
# Pattern: Current status → {allowed next statuses}; same → same is a no-op
VALID_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

SLOT_CONFLICT_MESSAGE = "An appointment already exists for that service at that date/time"

MAX_PAGE_SIZE = 1000


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return current == target or target in VALID_TRANSITIONS[current]


def ensure_transition(current: AppointmentStatus, target: AppointmentStatus):
    """
    Raises:
        InvalidTransition: If current → target is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot change appointment from {current.value} to {target.value}")


def truncate_to_minute(moment: datetime) -> datetime:
    """
    Canonical slot time: naive UTC with seconds and microseconds dropped.

    Aware values are converted to UTC; naive values are taken as UTC.
    """
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC).replace(tzinfo=None)
    return moment.replace(second=0, microsecond=0)


def as_utc(moment: datetime) -> datetime:
    """Re-attach UTC to a stored naive timestamp."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def _clean_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    stripped = notes.strip()
    return stripped or None


@dataclass(frozen=True)
class BookingRequest:
    """Client-supplied booking details (raw, not yet normalized)."""
    client_name: str
    client_phone: str
    service_id: str
    appointment_at: datetime
    notes: Optional[str] = None


class AppointmentScheduler:
    """
    Owns booking, status changes and slot occupancy.

    Pattern: Thin service over SQLAlchemy sessions, one transaction per
    operation. Depends on service and client lookups, never the reverse.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utc_now):
        """
        Initialize scheduler.

        Args:
            session_factory: SQLAlchemy sessionmaker (expire_on_commit=False)
            clock: Returns current naive UTC time
        """
        self.SessionLocal = session_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # Lookups

    @staticmethod
    def _active_service(db: Session, service_id: str) -> ServiceCatalog:
        service = db.get(ServiceCatalog, service_id)
        if service is None:
            raise NotFound("Service not found")
        if not service.active:
            raise InactiveService("The selected service is not active")
        return service

    @staticmethod
    def _get_appointment(db: Session, appointment_id: str) -> Appointment:
        appointment = db.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFound("Appointment not found")
        return appointment

    @staticmethod
    def _slot_taken(db: Session, service_id: str, slot: datetime, exclude_id: Optional[str] = None) -> bool:
        query = exists().where(
            Appointment.service_id == service_id,
            Appointment.appointment_at == slot,
            Appointment.status.in_(list(OCCUPYING_STATUSES)),
        )
        if exclude_id is not None:
            query = query.where(Appointment.id != exclude_id)
        return bool(db.scalar(select(query)))

    @staticmethod
    def _resolve_client(db: Session, name: str, raw_phone: str, phone_key: str) -> Client:
        """Find client by normalized phone or create one. Existing names are kept."""
        client = db.scalars(
            select(Client).where(Client.phone_normalized == phone_key)
        ).first()
        if client is None:
            client = Client(name=name, phone=raw_phone, phone_normalized=phone_key)
            db.add(client)
        return client

    # ------------------------------------------------------------------
    # Public booking

    def book(self, request: BookingRequest) -> Appointment:
        """
        Create a PENDING appointment.

        Steps: normalize input, check service, truncate time, pre-check the
        slot, resolve client by phone, persist.

        Returns:
            Persisted appointment with client and service loaded

        Raises:
            InvalidPhone: Phone digit count outside [8, 15]
            NotFound: Unknown service
            InactiveService: Service is not active
            SlotConflict: Slot already held (pre-check or storage constraint)
        """
        name = request.client_name.strip()
        raw_phone = request.client_phone.strip()
        phone_key = normalize_phone(raw_phone)
        notes = _clean_notes(request.notes)
        slot = truncate_to_minute(request.appointment_at)

        appointment = self._persist_booking(request.service_id, slot, name, raw_phone, phone_key, notes, retry=True)
        if appointment is None:
            # A concurrent booking created the same new client first; this
            # pass reuses it.
            appointment = self._persist_booking(request.service_id, slot, name, raw_phone, phone_key, notes, retry=False)
        return appointment

    def _persist_booking(
        self,
        service_id: str,
        slot: datetime,
        name: str,
        raw_phone: str,
        phone_key: str,
        notes: Optional[str],
        retry: bool,
    ) -> Optional[Appointment]:
        """One booking transaction. Returns None when a client race asks for a retry."""
        with self.SessionLocal() as db:
            service = self._active_service(db, service_id)

            if self._slot_taken(db, service.id, slot):
                logger.info("slot_conflict", service_id=service.id, slot=slot.isoformat(), detected_at="precheck")
                raise SlotConflict(SLOT_CONFLICT_MESSAGE)

            client = self._resolve_client(db, name, raw_phone, phone_key)
            appointment = Appointment(
                client=client,
                service=service,
                appointment_at=slot,
                status=AppointmentStatus.PENDING,
                notes=notes,
                created_at=self._clock(),
            )
            db.add(appointment)

            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                if self._slot_taken(db, service.id, slot):
                    logger.info(
                        "slot_conflict",
                        service_id=service.id,
                        slot=slot.isoformat(),
                        detected_at="constraint",
                    )
                    raise SlotConflict(SLOT_CONFLICT_MESSAGE) from None
                if retry:
                    logger.info("client_created_concurrently", phone_normalized=phone_key)
                    return None
                raise

            logger.info(
                "appointment_booked",
                appointment_id=appointment.id,
                service_id=service.id,
                client_id=client.id,
                slot=slot.isoformat(),
            )
            return appointment

    def list_services(self, active_only: bool = True) -> List[ServiceCatalog]:
        query = select(ServiceCatalog).order_by(ServiceCatalog.name)
        if active_only:
            query = query.where(ServiceCatalog.active.is_(True))
        with self.SessionLocal() as db:
            return list(db.scalars(query).all())

    def list_occupied(self, service_id: str, day: date) -> List[datetime]:
        """
        Occupied slot times for one service on one UTC day.

        Raises:
            NotFound: Unknown service
        """
        start = datetime(day.year, day.month, day.day)
        end = start + timedelta(days=1)
        with self.SessionLocal() as db:
            if db.get(ServiceCatalog, service_id) is None:
                raise NotFound("Service not found")
            rows = db.scalars(
                select(Appointment.appointment_at)
                .where(
                    Appointment.service_id == service_id,
                    Appointment.appointment_at >= start,
                    Appointment.appointment_at < end,
                    Appointment.status.in_(list(OCCUPYING_STATUSES)),
                )
                .order_by(Appointment.appointment_at)
            ).all()
        return list(rows)

    # ------------------------------------------------------------------
    # Staff operations

    def change_status(self, appointment_id: str, target: AppointmentStatus) -> Appointment:
        """
        Move an appointment to target status.

        Raises:
            NotFound: Unknown appointment
            InvalidTransition: Transition not in VALID_TRANSITIONS
            SlotConflict: Target is occupying and another occupying
                          appointment holds the slot
        """
        with self.SessionLocal() as db:
            appointment = self._get_appointment(db, appointment_id)
            current = appointment.status
            ensure_transition(current, target)
            if current == target:
                return appointment

            if target in OCCUPYING_STATUSES and self._slot_taken(
                db, appointment.service_id, appointment.appointment_at, exclude_id=appointment.id
            ):
                raise SlotConflict(SLOT_CONFLICT_MESSAGE)

            appointment.status = target
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise SlotConflict(SLOT_CONFLICT_MESSAGE) from None

            logger.info(
                "appointment_status_changed",
                appointment_id=appointment_id,
                from_status=current.value,
                to_status=target.value,
            )
            return appointment

    def update(self, appointment_id: str, request: BookingRequest) -> Appointment:
        """
        Staff edit of client, service, time and notes.

        The status is unchanged. The slot check excludes the appointment
        itself and applies only while its status is occupying.

        Raises:
            NotFound: Unknown appointment or service
            InvalidPhone / InactiveService / SlotConflict
        """
        name = request.client_name.strip()
        raw_phone = request.client_phone.strip()
        phone_key = normalize_phone(raw_phone)
        notes = _clean_notes(request.notes)
        slot = truncate_to_minute(request.appointment_at)

        appointment = self._apply_update(
            appointment_id, request.service_id, slot, name, raw_phone, phone_key, notes, retry=True
        )
        if appointment is None:
            appointment = self._apply_update(
                appointment_id, request.service_id, slot, name, raw_phone, phone_key, notes, retry=False
            )
        return appointment

    def _apply_update(
        self,
        appointment_id: str,
        service_id: str,
        slot: datetime,
        name: str,
        raw_phone: str,
        phone_key: str,
        notes: Optional[str],
        retry: bool,
    ) -> Optional[Appointment]:
        """One edit transaction. Returns None when a client race asks for a retry."""
        with self.SessionLocal() as db:
            appointment = self._get_appointment(db, appointment_id)
            service = self._active_service(db, service_id)

            occupying = appointment.status in OCCUPYING_STATUSES
            if occupying and self._slot_taken(db, service.id, slot, exclude_id=appointment.id):
                raise SlotConflict(SLOT_CONFLICT_MESSAGE)

            appointment.client = self._resolve_client(db, name, raw_phone, phone_key)
            appointment.service = service
            appointment.appointment_at = slot
            appointment.notes = notes

            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                if occupying and self._slot_taken(db, service_id, slot, exclude_id=appointment_id):
                    raise SlotConflict(SLOT_CONFLICT_MESSAGE) from None
                if retry:
                    logger.info("client_created_concurrently", phone_normalized=phone_key)
                    return None
                raise

            logger.info("appointment_updated", appointment_id=appointment_id, slot=slot.isoformat())
            return appointment

    def delete(self, appointment_id: str):
        """
        Raises:
            NotFound: Unknown appointment
        """
        with self.SessionLocal() as db:
            appointment = self._get_appointment(db, appointment_id)
            db.delete(appointment)
            db.commit()
        logger.info("appointment_deleted", appointment_id=appointment_id)

    def list_appointments(self, month: Optional[str] = None, limit: int = 500, page: int = 0) -> List[Appointment]:
        """
        Appointments ordered by time, optionally restricted to one month.

        Args:
            month: "YYYY-MM" (UTC) or None for all
            limit: Page size, clamped to [1, 1000]
            page: Zero-based page index

        Raises:
            BusinessRuleError: If month is malformed
        """
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        page = max(page, 0)

        query = select(Appointment).order_by(Appointment.appointment_at)
        if month:
            try:
                start = datetime.strptime(month.strip(), "%Y-%m")
            except ValueError:
                raise BusinessRuleError("Month must use the YYYY-MM format") from None
            end = datetime(start.year + (start.month // 12), start.month % 12 + 1, 1)
            query = query.where(Appointment.appointment_at >= start, Appointment.appointment_at < end)

        with self.SessionLocal() as db:
            return list(db.scalars(query.offset(page * limit).limit(limit)).unique().all())

    def list_stale_pending(self, older_than_minutes: int = 30) -> List[Appointment]:
        """PENDING appointments created more than N minutes ago, oldest first."""
        cutoff = self._clock() - timedelta(minutes=max(older_than_minutes, 1))
        with self.SessionLocal() as db:
            return list(db.scalars(
                select(Appointment)
                .where(
                    Appointment.status == AppointmentStatus.PENDING,
                    Appointment.created_at <= cutoff,
                )
                .order_by(Appointment.created_at)
            ).unique().all())
