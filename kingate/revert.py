"""One-time, version-aware reversal of audited person mutations."""
import logging
import os
from datetime import timedelta, timezone, datetime
from typing import Callable

from sqlalchemy.orm import Session

from . import changelog, events, guard, permissions, relations
from .db import transaction
from .errors import AlreadyReverted, IntegrityFault, NotFound, NotRevertible, Unauthorized
from .locks import record_lock, registry
from .models import AuditAction, AuditEntry, Person, Role, Severity, utcnow
from .permissions import PermissionLevel

logger = logging.getLogger(__name__)

REVERT_WINDOW_DAYS = int(os.environ.get("REVERT_WINDOW_DAYS", "30"))

REVERTIBLE_ACTIONS = frozenset({
    AuditAction.PERSON_CREATE,
    AuditAction.PERSON_UPDATE,
    AuditAction.PERSON_DELETE,
    AuditAction.SUGGESTION_APPROVE,
})


def _as_utc(ts: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def can_revert(db: Session, actor_id: str, entry: AuditEntry) -> bool:
    """Admins may revert anything. Others only recent person entries: their own
    while they still have full access, or anyone's if they moderate the record."""
    actor = relations.get_person(db, actor_id)
    if actor is None:
        return False
    if actor.role in permissions.ADMIN_ROLES:
        return True
    if entry.record_type != "person":
        return False
    if utcnow() - _as_utc(entry.created_at) > timedelta(days=REVERT_WINDOW_DAYS):
        return False
    if entry.actor_id == actor.id:
        level = permissions.evaluate(db, actor.id, entry.record_id, include_deleted_target=True)
        return level == PermissionLevel.FULL
    if actor.role == Role.MODERATOR:
        return True
    return permissions.covers_branch(db, actor.id, entry.record_id)


def _restorer(db: Session, entry: AuditEntry) -> Callable[[Person], None]:
    if entry.action == AuditAction.PERSON_DELETE:
        def restore(person: Person):
            person.deleted_at = None
    elif entry.action == AuditAction.PERSON_CREATE:
        def restore(person: Person):
            person.deleted_at = utcnow()
    else:
        old = entry.old_data or {}
        fields = [guard.parse_field(name) for name in entry.changed_fields if guard.is_editable(name)]

        def restore(person: Person):
            for field in fields:
                guard.set_field(db, person, field, old.get(field.value))
    return restore


def revert_entry(db: Session, entry_id: str, actor_id: str, reason: str | None = None) -> Person:
    """Undo one audited mutation through the guard and audit the undo.

    The record must still be at the version the entry produced; otherwise
    VersionConflict is raised and nothing changes.
    """
    with registry.hold(f"audit:{entry_id}"):
        entry = (
            db.query(AuditEntry)
            .filter(AuditEntry.id == entry_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if entry is None:
            raise NotFound("Audit entry not found")
        if entry.reverted_at is not None:
            raise AlreadyReverted(f"Audit entry {entry_id} was already reverted")
        if entry.action == AuditAction.REVERT:
            raise NotRevertible("A revert cannot itself be reverted")
        if not entry.is_revertible or entry.action not in REVERTIBLE_ACTIONS:
            raise NotRevertible(f"Audit entry {entry_id} cannot be reverted")
        if not can_revert(db, actor_id, entry):
            logger.warning("Revert of %s refused for %s", entry_id, actor_id)
            raise Unauthorized()

        expected_version = (entry.new_data or {}).get("version")
        if expected_version is None:
            logger.critical("Audit entry %s (%s on %s by %s) has no version in new_data: %r",
                            entry.id, entry.action.value, entry.record_id, entry.actor_id,
                            entry.new_data)
            raise IntegrityFault(f"Audit entry {entry.id} has no recorded version")

        restore = _restorer(db, entry)
        with record_lock(entry.record_id), transaction(db):
            person, before, after = guard.guarded_apply(
                db, entry.record_id, expected_version, actor_id, restore, include_deleted=True,
            )
            entry.reverted_at = utcnow()
            entry.reverted_by = actor_id
            entry.revert_reason = reason
            undo = changelog.record_entry(
                db, actor_id, AuditAction.REVERT, person.id, before, after,
                description=f"Reverted {entry.action.value} on {person.name}"
                            + (f": {reason}" if reason else ""),
                severity=Severity.MEDIUM, reverts_id=entry.id, revertible=False,
            )
    logger.info("Audit entry %s reverted by %s as %s", entry_id, actor_id, undo.id)
    events.emit(events.PERSON_CHANGED,
                {"person_id": person.id, "audit_id": undo.id, "actor_id": actor_id})
    if entry.action in (AuditAction.PERSON_CREATE, AuditAction.PERSON_DELETE):
        events.emit(events.LAYOUT_RECALCULATE, {"person_ids": [person.id], "reason": "revert"})
    return person
