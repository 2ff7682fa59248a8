"""
Reservation audit ledger model.

Every mutation of a reservation - status changes, field edits, notes,
payments, add-ons, late fees, approval events - appends one row here.
Rows are never edited; notes are edited and deleted by appending.
"""
from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, JSON, String

from reservation_engine.database import Base
from reservation_engine.models.enums import AuditAction
from reservation_engine.timeutils import utcnow


class AuditLogEntry(Base):
    """
    Immutable ledger entry for reconstructing a reservation's history.

    Invariants:
    - Once written, never edited
    - Append-only; only retention purging removes rows
    - A status transition writes exactly one FIELD_UPDATED row with field_name "status"
    """
    __tablename__ = "reservation_audit_log"
    __table_args__ = (
        Index("ix_audit_log_reservation_changed", "reservation_id", "changed_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False)
    property_id = Column(String, nullable=False, index=True)

    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    field_name = Column(String, nullable=True)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    description = Column(String, nullable=True)

    changed_by = Column(String, nullable=True)  # Nullable for system events
    metadata_json = Column("metadata", JSON, nullable=True)
    changed_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<AuditLogEntry id={self.id} reservation={self.reservation_id} action={self.action}>"


STATUS_FIELD = "status"
NOTES_FIELD = "notes"
