"""Versioned mutation guard: compare-and-swap writes to person records.

A write names the version it was based on. Under the record lock the stored
version is compared, the change applied, the version bumped by one and the
audit entry written, all in one transaction. A stale writer gets
VersionConflict and nothing is applied.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import changelog, events, relations
from .db import transaction
from .errors import (
    IntegrityFault, InvalidField, InvalidValue, NotFound, Unauthorized, VersionConflict,
)
from .locks import record_lock
from .models import AuditAction, Gender, Person, PersonStatus, Severity, utcnow
from .permissions import PermissionLevel, evaluate

logger = logging.getLogger(__name__)


class EditableField(str, enum.Enum):
    NAME = "name"
    BIO = "bio"
    BIRTH_DATE = "birth_date"
    DEATH_DATE = "death_date"
    BIRTH_PLACE = "birth_place"
    CURRENT_RESIDENCE = "current_residence"
    OCCUPATION = "occupation"
    EDUCATION = "education"
    PHONE = "phone"
    EMAIL = "email"
    NOTES = "notes"
    STATUS = "status"
    FATHER_ID = "father_id"
    MOTHER_ID = "mother_id"
    SIBLING_ORDER = "sibling_order"


# ── Typed coercers ──

def _text(max_length: int, required: bool = False) -> Callable[[Any], str | None]:
    def coerce(value):
        if value is None or (isinstance(value, str) and not value.strip()):
            if required:
                raise InvalidValue("a value is required")
            return None
        if not isinstance(value, str):
            raise InvalidValue("expected text")
        value = value.strip()
        if len(value) > max_length:
            raise InvalidValue(f"longer than {max_length} characters")
        return value
    return coerce


def _status(value) -> PersonStatus:
    try:
        return PersonStatus(value)
    except ValueError:
        raise InvalidValue(f"unknown status {value!r}") from None


def _order(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidValue("expected a non-negative integer")
    return value


def _person_ref(value) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidValue("expected a person id")
    return value


def _parent_check(gender: Gender) -> Callable[[Session, Person, str | None], None]:
    def check(db: Session, person: Person, parent_id: str | None):
        if parent_id is None:
            return
        if parent_id == person.id:
            raise InvalidValue("a person cannot be their own parent")
        parent = relations.get_person(db, parent_id)
        if parent is None:
            raise InvalidValue("parent not found")
        if parent.gender != gender:
            raise InvalidValue(f"parent must be {gender.value}")
        if person.id in relations.ancestor_ids(db, parent_id, max_depth=None):
            raise InvalidValue("parent is a descendant of this person")
    return check


@dataclass(frozen=True)
class FieldSpec:
    coerce: Callable[[Any], Any]
    suggestible: bool = True
    check: Callable[[Session, Person, Any], None] | None = None


FIELD_SPECS: dict[EditableField, FieldSpec] = {
    EditableField.NAME: FieldSpec(_text(200, required=True)),
    EditableField.BIO: FieldSpec(_text(5000)),
    EditableField.BIRTH_DATE: FieldSpec(_text(32)),
    EditableField.DEATH_DATE: FieldSpec(_text(32)),
    EditableField.BIRTH_PLACE: FieldSpec(_text(200)),
    EditableField.CURRENT_RESIDENCE: FieldSpec(_text(200)),
    EditableField.OCCUPATION: FieldSpec(_text(200)),
    EditableField.EDUCATION: FieldSpec(_text(200)),
    EditableField.PHONE: FieldSpec(_text(50)),
    EditableField.EMAIL: FieldSpec(_text(200)),
    EditableField.NOTES: FieldSpec(_text(5000)),
    EditableField.STATUS: FieldSpec(_status),
    EditableField.FATHER_ID: FieldSpec(_person_ref, suggestible=False,
                                       check=_parent_check(Gender.MALE)),
    EditableField.MOTHER_ID: FieldSpec(_person_ref, suggestible=False,
                                       check=_parent_check(Gender.FEMALE)),
    EditableField.SIBLING_ORDER: FieldSpec(_order, suggestible=False),
}
SUGGESTIBLE_FIELDS = frozenset(f for f, spec in FIELD_SPECS.items() if spec.suggestible)
_STRUCTURAL_FIELDS = frozenset({EditableField.FATHER_ID, EditableField.MOTHER_ID})


def is_editable(name: str) -> bool:
    return name in EditableField._value2member_map_


def parse_field(name: str) -> EditableField:
    try:
        return EditableField(name)
    except ValueError:
        raise InvalidField(str(name)) from None


def parse_changes(changes: dict) -> dict[EditableField, Any]:
    if not changes:
        raise InvalidValue("no changes given")
    return {parse_field(name): value for name, value in changes.items()}


def coerce_value(field: EditableField, value):
    try:
        return FIELD_SPECS[field].coerce(value)
    except InvalidValue as e:
        raise InvalidValue(f"{field.value}: {e}") from None


def compute_generation(db: Session, father_id: str | None, mother_id: str | None) -> int:
    parent_ids = [pid for pid in (father_id, mother_id) if pid]
    if not parent_ids:
        return 1
    generations = [g for (g,) in db.query(Person.generation).filter(Person.id.in_(parent_ids))]
    return max(generations) + 1 if generations else 1


def set_field(db: Session, person: Person, field: EditableField, value):
    """Coerce, validate and assign one field; parent changes also move the generation."""
    value = coerce_value(field, value)
    spec = FIELD_SPECS[field]
    if spec.check is not None:
        try:
            spec.check(db, person, value)
        except InvalidValue as e:
            raise InvalidValue(f"{field.value}: {e}") from None
    setattr(person, field.value, value)
    if field in _STRUCTURAL_FIELDS:
        person.generation = compute_generation(db, person.father_id, person.mother_id)


# ── Guarded apply ──

def _require_full(db: Session, actor_id: str) -> Callable[[Person], None]:
    def check(person: Person):
        if evaluate(db, actor_id, person.id) != PermissionLevel.FULL:
            raise Unauthorized()
    return check


def guarded_apply(db: Session, target_id: str, expected_version: int, actor_id: str | None,
                  mutate: Callable[[Person], None],
                  include_deleted: bool = False,
                  check: Callable[[Person], None] | None = None) -> tuple[Person, dict, dict]:
    """Check-and-apply on one record. Call with record_lock(target_id) held inside an open transaction.

    ``check`` runs on the locked row before the version comparison, so access
    is decided against the same state the write lands on.

    Returns the person with before and after snapshots.
    """
    person = relations.get_person(db, target_id, include_deleted=include_deleted, for_update=True)
    if person is None:
        raise NotFound("Person not found")
    if check is not None:
        check(person)
    if person.version is None:
        logger.critical("Person %s has no version (name=%r); refusing to write", target_id,
                        person.name)
        raise IntegrityFault(f"Person {target_id} has no version")
    if person.version != expected_version:
        logger.warning("Version conflict on %s by %s: expected %s, found %s",
                       target_id, actor_id, expected_version, person.version)
        raise VersionConflict(target_id, expected_version, person.version)

    before = changelog.snapshot_person(person)
    # One flush means one UPDATE, so the version moves by exactly one.
    with db.no_autoflush:
        mutate(person)
        person.updated_at = utcnow()
        person.updated_by = actor_id
    try:
        db.flush()
    except StaleDataError:
        # Another process committed between our read and our write.
        db.rollback()
        actual = db.query(Person.version).filter(Person.id == target_id).scalar()
        logger.warning("Concurrent write on %s by %s: expected %s, found %s",
                       target_id, actor_id, expected_version, actual)
        raise VersionConflict(target_id, expected_version, actual) from None
    return person, before, changelog.snapshot_person(person)


def apply_mutation(db: Session, actor_id: str, target_id: str, expected_version: int,
                   changes: dict) -> Person:
    """Apply field changes to a person if actor has full access and the version matches."""
    fields = parse_changes(changes)
    if relations.get_person(db, target_id) is None:
        raise NotFound("Person not found")

    def mutate(person: Person):
        for field, value in fields.items():
            set_field(db, person, field, value)

    with record_lock(target_id), transaction(db):
        person, before, after = guarded_apply(db, target_id, expected_version, actor_id, mutate,
                                               check=_require_full(db, actor_id))
        changed = changelog.diff_fields(before, after)
        entry = changelog.record_entry(
            db, actor_id, AuditAction.PERSON_UPDATE, person.id, before, after,
            description=f"Updated {', '.join(changed) or 'nothing'} on {person.name}",
            severity=Severity.MEDIUM if _STRUCTURAL_FIELDS & set(fields) else Severity.LOW,
        )
    logger.info("Person %s updated to version %s by %s", target_id, person.version, actor_id)
    events.emit(events.PERSON_CHANGED,
                {"person_id": target_id, "audit_id": entry.id, "actor_id": actor_id})
    return person


def delete_person(db: Session, actor_id: str, target_id: str, expected_version: int) -> Person:
    """Soft-delete a person. The row stays and can be restored by reverting the entry."""
    if relations.get_person(db, target_id) is None:
        raise NotFound("Person not found")

    def mutate(person: Person):
        person.deleted_at = utcnow()

    with record_lock(target_id), transaction(db):
        person, before, after = guarded_apply(db, target_id, expected_version, actor_id, mutate,
                                               check=_require_full(db, actor_id))
        entry = changelog.record_entry(
            db, actor_id, AuditAction.PERSON_DELETE, person.id, before, after,
            description=f"Deleted {person.name}", severity=Severity.HIGH,
        )
    logger.info("Person %s deleted by %s", target_id, actor_id)
    events.emit(events.PERSON_CHANGED,
                {"person_id": target_id, "audit_id": entry.id, "actor_id": actor_id})
    events.emit(events.LAYOUT_RECALCULATE, {"person_ids": [target_id], "reason": "delete"})
    return person
