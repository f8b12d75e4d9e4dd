"""Append-only audit ledger: snapshots, recording and listing."""
import enum
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from .models import AuditEntry, AuditAction, Person, Severity

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = (
    "id", "name", "gender", "generation", "father_id", "mother_id", "sibling_order",
    "status", "bio", "birth_date", "death_date", "birth_place", "current_residence",
    "occupation", "education", "phone", "email", "notes", "role", "version",
    "deleted_at", "updated_at", "updated_by",
)
# Stamped on every write, so never reported as a changed field.
BOOKKEEPING_FIELDS = frozenset({"version", "updated_at", "updated_by"})


def plain(value):
    """JSON-safe form of a column value."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def snapshot_person(person: Person) -> dict:
    return {name: plain(getattr(person, name)) for name in SNAPSHOT_FIELDS}


def diff_fields(old: dict | None, new: dict | None) -> list[str]:
    old = old or {}
    new = new or {}
    return sorted(
        name for name in set(old) | set(new)
        if name not in BOOKKEEPING_FIELDS and old.get(name) != new.get(name)
    )


def record_entry(db: Session, actor_id: str | None, action: AuditAction, record_id: str,
                 old: dict | None = None, new: dict | None = None, *,
                 record_type: str = "person", description: str = "",
                 severity: Severity = Severity.LOW, suggestion_id: str | None = None,
                 reverts_id: str | None = None, revertible: bool = True) -> AuditEntry:
    """Add an entry to the caller's open transaction. The caller commits."""
    entry = AuditEntry(
        actor_id=actor_id,
        action=action,
        record_type=record_type,
        record_id=record_id,
        old_data=old,
        new_data=new,
        changed_fields=diff_fields(old, new),
        description=description,
        severity=severity,
        suggestion_id=suggestion_id,
        reverts_id=reverts_id,
        is_revertible=revertible,
    )
    db.add(entry)
    db.flush()
    logger.info("Audit %s: %s on %s %s by %s", entry.id, action.value, record_type,
                record_id, actor_id or "system")
    return entry


def get_entry(db: Session, entry_id: str) -> AuditEntry | None:
    return db.get(AuditEntry, entry_id)


def list_entries(db: Session, record_id: str | None = None, actor_id: str | None = None,
                 limit: int = 50, offset: int = 0) -> list[AuditEntry]:
    """List entries newest first, optionally for one record or one actor."""
    limit = max(1, min(int(limit), 200))
    offset = max(0, int(offset))
    query = db.query(AuditEntry)
    if record_id:
        query = query.filter(AuditEntry.record_id == record_id)
    if actor_id:
        query = query.filter(AuditEntry.actor_id == actor_id)
    return (
        query.order_by(AuditEntry.created_at.desc(), AuditEntry.id)
        .offset(offset)
        .limit(limit)
        .all()
    )
