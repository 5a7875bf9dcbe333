"""Client administration: listing, edits, merges and deletion.

Shares the identity rule with the scheduler: every phone goes through
normalize_phone before it is compared or stored, so both paths agree on
the canonical key.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from stylebook.errors import BusinessRuleError, DuplicatePhone, NotFound
from stylebook.logging_config import get_logger
from stylebook.models import Appointment, AppointmentStatus, Client
from stylebook.phone import normalize_phone

logger = get_logger(__name__)

DUPLICATE_PHONE_MESSAGE = "Another client already uses that phone number"


@dataclass(frozen=True)
class ClientSummary:
    """Client row plus completed-visit statistics."""
    id: str
    name: str
    phone: str
    completed_count: int
    last_visit: Optional[datetime]


class ClientDirectory:
    """
    Admin-facing client operations.

    Pattern: One transaction per operation. Merge is a single UPDATE plus
    DELETE committed together, so readers see either the old or the new
    ownership of every appointment, never a mix.
    """

    def __init__(self, session_factory: sessionmaker):
        self.SessionLocal = session_factory

    @staticmethod
    def _summary_query():
        completed = Appointment.status == AppointmentStatus.COMPLETED
        completed_count = func.count(case((completed, Appointment.id)))
        last_visit = func.max(case((completed, Appointment.appointment_at)))
        return (
            select(Client, completed_count, last_visit)
            .outerjoin(Appointment, Appointment.client_id == Client.id)
            .group_by(Client.id)
        )

    @staticmethod
    def _to_summary(client: Client, count: Optional[int], visit: Optional[datetime]) -> ClientSummary:
        return ClientSummary(
            id=client.id,
            name=client.name,
            phone=client.phone,
            completed_count=int(count or 0),
            last_visit=visit,
        )

    def list_clients(self) -> List[ClientSummary]:
        """Clients with their completed visits, most recent visit first (never-visited last)."""
        with self.SessionLocal() as db:
            rows = db.execute(self._summary_query()).all()

        summaries = [self._to_summary(*row) for row in rows]
        summaries.sort(key=lambda s: s.name.lower())
        summaries.sort(key=lambda s: s.last_visit or datetime.min, reverse=True)
        return summaries

    def get_summary(self, client_id: str) -> ClientSummary:
        """
        Raises:
            NotFound: Unknown client
        """
        with self.SessionLocal() as db:
            row = db.execute(self._summary_query().where(Client.id == client_id)).first()
        if row is None:
            raise NotFound("Client not found")
        return self._to_summary(*row)

    def update_client(self, client_id: str, name: str, phone: str) -> Client:
        """
        Rename a client or change their phone.

        Raises:
            NotFound: Unknown client
            InvalidPhone: Phone digit count outside [8, 15]
            DuplicatePhone: Normalized phone belongs to another client
        """
        name = name.strip()
        raw_phone = phone.strip()
        phone_key = normalize_phone(raw_phone)
        if not name:
            raise BusinessRuleError("Client name is required")

        with self.SessionLocal() as db:
            client = db.get(Client, client_id)
            if client is None:
                raise NotFound("Client not found")

            owner_id = db.scalar(select(Client.id).where(Client.phone_normalized == phone_key))
            if owner_id is not None and owner_id != client.id:
                raise DuplicatePhone(DUPLICATE_PHONE_MESSAGE)

            client.name = name
            client.phone = raw_phone
            client.phone_normalized = phone_key
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise DuplicatePhone(DUPLICATE_PHONE_MESSAGE) from None

            logger.info("client_updated", client_id=client_id)
            return client

    def merge(self, source_id: str, target_id: str) -> Client:
        """
        Move every appointment of source to target, then delete source.

        Returns:
            The surviving target client

        Raises:
            BusinessRuleError: If source and target are the same client
            NotFound: If either client is missing
        """
        if source_id == target_id:
            raise BusinessRuleError("Cannot merge a client into itself")

        with self.SessionLocal() as db:
            source = db.get(Client, source_id)
            target = db.get(Client, target_id)
            if source is None or target is None:
                raise NotFound("Client not found")

            moved = db.execute(
                update(Appointment)
                .where(Appointment.client_id == source_id)
                .values(client_id=target_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.delete(source)
            db.commit()

        logger.info("clients_merged", source_id=source_id, target_id=target_id, appointments_moved=moved)
        return target

    def delete_client(self, client_id: str):
        """
        Delete a client together with all of their appointments.

        Raises:
            NotFound: Unknown client
        """
        with self.SessionLocal() as db:
            client = db.get(Client, client_id)
            if client is None:
                raise NotFound("Client not found")

            removed = db.execute(
                delete(Appointment)
                .where(Appointment.client_id == client_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.delete(client)
            db.commit()

        logger.info("client_deleted", client_id=client_id, appointments_deleted=removed)
