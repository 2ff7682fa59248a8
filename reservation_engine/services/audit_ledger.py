"""
Append-only audit ledger for reservations.

Low-level writers (record, log_*) only add and flush; the caller owns the
transaction so a ledger row and the change it describes commit together.
Note operations are complete user actions and commit themselves.

Notes are edited and deleted by appending NOTE_EDITED / NOTE_DELETED rows.
No existing row is ever mutated; the current note text is folded from the
ledger on read.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Generic, Iterable, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from reservation_engine.models.audit import AuditLogEntry, NOTES_FIELD, STATUS_FIELD
from reservation_engine.models.domain import Reservation, StatusHistoryEntry
from reservation_engine.models.enums import AuditAction, ReservationStatus, TransitionOriginKind
from reservation_engine.services.errors import NotFoundError, ValidationError
from reservation_engine.timeutils import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOTE_ACTIONS = (AuditAction.NOTE_ADDED, AuditAction.NOTE_EDITED, AuditAction.NOTE_DELETED)
TERMINAL_STATUSES = (
    ReservationStatus.CHECKED_OUT,
    ReservationStatus.NO_SHOW,
    ReservationStatus.CANCELLED,
)
MAX_PAGE_SIZE = 200


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


@dataclass
class NoteView:
    """Current state of one note, folded from its ledger rows."""
    note_id: int
    reservation_id: int
    content: str
    author: Optional[str]
    created_at: datetime
    updated_at: datetime
    edited_by: Optional[str]
    edit_count: int
    note_type: str
    important: bool


def validate_page(limit: int, offset: int) -> None:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if offset < 0:
        raise ValidationError("offset must not be negative")


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


class AuditLedger:
    """Writes and reads the reservation audit trail."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        reservation_id: int,
        property_id: str,
        action: AuditAction,
        description: Optional[str] = None,
        field_name: Optional[str] = None,
        old_value: Any = None,
        new_value: Any = None,
        changed_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        changed_at: Optional[datetime] = None
    ) -> AuditLogEntry:
        """Append one ledger row inside the caller's transaction."""
        entry = AuditLogEntry(
            reservation_id=reservation_id,
            property_id=property_id,
            action=action,
            field_name=field_name,
            old_value=_stringify(old_value),
            new_value=_stringify(new_value),
            description=description,
            changed_by=changed_by,
            metadata_json=metadata,
            changed_at=changed_at or utcnow()
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def log_status_change(
        self,
        reservation: Reservation,
        previous_status: ReservationStatus,
        new_status: ReservationStatus,
        changed_by: Optional[str],
        reason: Optional[str],
        origin: TransitionOriginKind,
        changed_at: datetime,
        approval_request_id: Optional[int] = None
    ) -> AuditLogEntry:
        description = f"Status changed from {previous_status.value} to {new_status.value}"
        if reason:
            description = f"{description}: {reason}"
        metadata: Dict[str, Any] = {
            "origin": origin.value,
            "is_automatic": origin == TransitionOriginKind.AUTOMATIC,
        }
        if approval_request_id is not None:
            metadata["approval_request_id"] = approval_request_id
        return self.record(
            reservation.id,
            reservation.property_id,
            AuditAction.FIELD_UPDATED,
            description=description,
            field_name=STATUS_FIELD,
            old_value=previous_status,
            new_value=new_status,
            changed_by=changed_by,
            metadata=metadata,
            changed_at=changed_at
        )

    def log_created(self, reservation: Reservation, changed_by: Optional[str]) -> AuditLogEntry:
        return self.record(
            reservation.id,
            reservation.property_id,
            AuditAction.CREATED,
            description=f"Reservation created for {reservation.guest_name or 'Guest'}",
            changed_by=changed_by,
            metadata={"guest_name": reservation.guest_name}
        )

    def log_field_update(
        self,
        reservation: Reservation,
        field_name: str,
        old_value: Any,
        new_value: Any,
        changed_by: Optional[str]
    ) -> AuditLogEntry:
        if field_name == STATUS_FIELD:
            raise ValidationError("Status changes are recorded by the transition engine")
        return self.record(
            reservation.id,
            reservation.property_id,
            AuditAction.FIELD_UPDATED,
            description=f"Updated {field_name}",
            field_name=field_name,
            old_value=old_value,
            new_value=new_value,
            changed_by=changed_by
        )

    def log_payment(
        self,
        reservation: Reservation,
        amount_cents: int,
        payment_method: str,
        changed_by: Optional[str]
    ) -> AuditLogEntry:
        return self.record(
            reservation.id,
            reservation.property_id,
            AuditAction.PAYMENT_MADE,
            description=f"Payment of {amount_cents} received via {payment_method}",
            changed_by=changed_by,
            metadata={"amount_cents": amount_cents, "payment_method": payment_method}
        )

    def log_addon_added(
        self,
        reservation: Reservation,
        addon_name: str,
        quantity: int,
        price_cents: int,
        changed_by: Optional[str]
    ) -> AuditLogEntry:
        return self.record(
            reservation.id,
            reservation.property_id,
            AuditAction.ADDON_ADDED,
            description=f"Added {quantity}x {addon_name} ({price_cents} each)",
            changed_by=changed_by,
            metadata={"addon_name": addon_name, "quantity": quantity, "price_cents": price_cents}
        )

    def log_addon_removed(
        self,
        reservation: Reservation,
        addon_name: str,
        changed_by: Optional[str]
    ) -> AuditLogEntry:
        return self.record(
            reservation.id,
            reservation.property_id,
            AuditAction.ADDON_REMOVED,
            description=f"Removed {addon_name}",
            changed_by=changed_by,
            metadata={"addon_name": addon_name}
        )

    # Notes

    def add_note(
        self,
        reservation: Reservation,
        content: str,
        changed_by: Optional[str],
        note_type: str = "INTERNAL",
        important: bool = False
    ) -> AuditLogEntry:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Note content is required")
        entry = self.record(
            reservation.id,
            reservation.property_id,
            AuditAction.NOTE_ADDED,
            description=f"Note added: {content[:100]}",
            field_name=NOTES_FIELD,
            new_value=content,
            changed_by=changed_by,
            metadata={"note_type": note_type, "important": important}
        )
        self.db.commit()
        return entry

    def edit_note(
        self,
        reservation: Reservation,
        note_id: int,
        content: str,
        changed_by: Optional[str]
    ) -> AuditLogEntry:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Note content is required")
        current = self._live_note(reservation.id, note_id)
        entry = self.record(
            reservation.id,
            reservation.property_id,
            AuditAction.NOTE_EDITED,
            description="Note edited",
            field_name=NOTES_FIELD,
            old_value=current.content,
            new_value=content,
            changed_by=changed_by,
            metadata={"original_note_id": note_id}
        )
        self.db.commit()
        return entry

    def delete_note(
        self,
        reservation: Reservation,
        note_id: int,
        changed_by: Optional[str]
    ) -> AuditLogEntry:
        current = self._live_note(reservation.id, note_id)
        entry = self.record(
            reservation.id,
            reservation.property_id,
            AuditAction.NOTE_DELETED,
            description=f"Note deleted (Deleted note ID: {note_id})",
            field_name=NOTES_FIELD,
            old_value=current.content,
            changed_by=changed_by,
            metadata={"deleted_note_id": note_id}
        )
        self.db.commit()
        return entry

    def current_notes(self, reservation_id: int) -> List[NoteView]:
        """Live notes, newest first, with edits applied and deletions removed."""
        rows = self.db.query(AuditLogEntry).filter(
            AuditLogEntry.reservation_id == reservation_id,
            AuditLogEntry.action.in_(NOTE_ACTIONS)
        ).order_by(AuditLogEntry.changed_at.asc(), AuditLogEntry.id.asc()).all()
        notes = self._fold_notes(rows)
        return sorted(notes.values(), key=lambda n: (n.created_at, n.note_id), reverse=True)

    def note_history(self, reservation_id: int, note_id: int) -> List[AuditLogEntry]:
        """The add, every edit and the delete of one note, oldest first."""
        rows = self.db.query(AuditLogEntry).filter(
            AuditLogEntry.reservation_id == reservation_id,
            AuditLogEntry.action.in_(NOTE_ACTIONS)
        ).order_by(AuditLogEntry.changed_at.asc(), AuditLogEntry.id.asc()).all()
        history = [
            row for row in rows
            if (row.id == note_id and row.action == AuditAction.NOTE_ADDED)
            or (row.metadata_json or {}).get("original_note_id") == note_id
            or (row.metadata_json or {}).get("deleted_note_id") == note_id
        ]
        if not history:
            raise NotFoundError("Note not found", {"note_id": note_id})
        return history

    def _live_note(self, reservation_id: int, note_id: int) -> NoteView:
        for note in self.current_notes(reservation_id):
            if note.note_id == note_id:
                return note
        raise NotFoundError("Note not found", {"note_id": note_id})

    @staticmethod
    def _fold_notes(rows: Iterable[AuditLogEntry]) -> Dict[int, NoteView]:
        notes: Dict[int, NoteView] = {}
        for row in rows:
            metadata = row.metadata_json or {}
            if row.action == AuditAction.NOTE_ADDED:
                notes[row.id] = NoteView(
                    note_id=row.id,
                    reservation_id=row.reservation_id,
                    content=row.new_value or "",
                    author=row.changed_by,
                    created_at=row.changed_at,
                    updated_at=row.changed_at,
                    edited_by=None,
                    edit_count=0,
                    note_type=metadata.get("note_type", "INTERNAL"),
                    important=bool(metadata.get("important", False))
                )
            elif row.action == AuditAction.NOTE_EDITED:
                note = notes.get(metadata.get("original_note_id"))
                if note is not None:
                    note.content = row.new_value or ""
                    note.updated_at = row.changed_at
                    note.edited_by = row.changed_by
                    note.edit_count += 1
            elif row.action == AuditAction.NOTE_DELETED:
                notes.pop(metadata.get("deleted_note_id"), None)
        return notes

    # Reads

    def get_audit_log(
        self,
        reservation_id: int,
        limit: int = 50,
        offset: int = 0,
        actions: Optional[Iterable[AuditAction]] = None
    ) -> Page[AuditLogEntry]:
        validate_page(limit, offset)
        query = self.db.query(AuditLogEntry).filter(AuditLogEntry.reservation_id == reservation_id)
        if actions:
            query = query.filter(AuditLogEntry.action.in_(list(actions)))
        total = query.count()
        items = query.order_by(
            AuditLogEntry.changed_at.desc(),
            AuditLogEntry.id.desc()
        ).offset(offset).limit(limit).all()
        return Page(items=items, total=total, limit=limit, offset=offset)

    def get_status_history(
        self,
        reservation_id: int,
        limit: int = 50,
        offset: int = 0,
        include_automatic: bool = True
    ) -> Page[StatusHistoryEntry]:
        validate_page(limit, offset)
        query = self.db.query(StatusHistoryEntry).filter(
            StatusHistoryEntry.reservation_id == reservation_id
        )
        if not include_automatic:
            query = query.filter(StatusHistoryEntry.is_automatic.is_(False))
        total = query.count()
        items = query.order_by(
            StatusHistoryEntry.changed_at.desc(),
            StatusHistoryEntry.id.desc()
        ).offset(offset).limit(limit).all()
        return Page(items=items, total=total, limit=limit, offset=offset)

    # Retention

    def purge_expired(self, property_id: str, retention_days: int, now: Optional[datetime] = None) -> int:
        """
        Delete audit rows older than the retention window.

        Only rows of reservations in a terminal state are eligible, and note
        rows are kept for the life of the reservation. Status history is never
        purged.
        """
        if retention_days < 1:
            raise ValidationError("retention_days must be positive")
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        terminal_ids = select(Reservation.id).where(
            Reservation.property_id == property_id,
            Reservation.status.in_(TERMINAL_STATUSES)
        )
        deleted = self.db.query(AuditLogEntry).filter(
            AuditLogEntry.property_id == property_id,
            AuditLogEntry.changed_at < cutoff,
            AuditLogEntry.reservation_id.in_(terminal_ids),
            AuditLogEntry.action.notin_(NOTE_ACTIONS)
        ).delete(synchronize_session=False)
        self.db.commit()
        if deleted:
            logger.info(
                "Purged %s audit log entries for property %s older than %s",
                deleted, property_id, cutoff.isoformat()
            )
        return deleted
