"""Person creation, bulk child creation and marriages."""
import logging
import uuid

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from . import changelog, events, guard, relations
from .db import transaction
from .errors import InvalidValue, MarriageConflict, NotFound, Unauthorized
from .guard import EditableField
from .locks import advisory_lock, registry
from .models import (
    AuditAction, Gender, Marriage, MarriageStatus, Person, Role, Severity, utcnow,
)
from .permissions import PermissionLevel, evaluate, is_admin

logger = logging.getLogger(__name__)

_GENDER_ALIASES = {"M": Gender.MALE, "F": Gender.FEMALE}


def parse_gender(value) -> Gender:
    if isinstance(value, Gender):
        return value
    if isinstance(value, str):
        if value.upper() in _GENDER_ALIASES:
            return _GENDER_ALIASES[value.upper()]
        try:
            return Gender(value.lower())
        except ValueError:
            pass
    raise InvalidValue(f"gender must be male or female, got {value!r}")


def get_person(db: Session, person_id: str) -> Person:
    person = relations.get_person(db, person_id)
    if person is None:
        raise NotFound("Person not found")
    return person


def list_children(db: Session, parent_id: str) -> list[Person]:
    return (
        db.query(Person)
        .filter(or_(Person.father_id == parent_id, Person.mother_id == parent_id),
                Person.deleted_at.is_(None))
        .order_by(Person.sibling_order, Person.name)
        .all()
    )


def _max_sibling_order(db: Session, parent_id: str) -> int:
    value = (
        db.query(func.max(Person.sibling_order))
        .filter(or_(Person.father_id == parent_id, Person.mother_id == parent_id),
                Person.deleted_at.is_(None))
        .scalar()
    )
    return value or 0


def _new_person(db: Session, name, gender, details: dict) -> Person:
    person = Person(id=str(uuid.uuid4()), name=guard.coerce_value(EditableField.NAME, name),
                    gender=parse_gender(gender))
    for key, value in details.items():
        guard.set_field(db, person, guard.parse_field(key), value)
    return person


def create_person(db: Session, name: str, gender, *, actor_id: str | None = None,
                  father_id: str | None = None, mother_id: str | None = None,
                  role: Role = Role.NONE, details: dict | None = None) -> Person:
    """Create a person and audit it.

    With an actor, the actor must be admin or have full access to one of the
    given parents. Without one (seeding, setup) no check is made.
    """
    details = details or {}
    father_id = father_id or details.get("father_id")
    mother_id = mother_id or details.get("mother_id")
    details = {k: v for k, v in details.items() if k not in ("father_id", "mother_id")}
    parent_ids = [pid for pid in (father_id, mother_id) if pid]
    if actor_id is not None:
        allowed = is_admin(db, actor_id) or any(
            evaluate(db, actor_id, pid) == PermissionLevel.FULL for pid in parent_ids
        )
        if not allowed:
            raise Unauthorized()

    # Same keys bulk_create_children takes, one per parent.
    with advisory_lock(db, *(f"children:{pid}" for pid in parent_ids)), transaction(db):
        person = _new_person(db, name, gender, details)
        person.role = Role(role)
        guard.set_field(db, person, EditableField.FATHER_ID, father_id)
        guard.set_field(db, person, EditableField.MOTHER_ID, mother_id)
        if "sibling_order" not in details and parent_ids:
            person.sibling_order = max(_max_sibling_order(db, pid) for pid in parent_ids) + 1
        db.add(person)
        db.flush()
        changelog.record_entry(
            db, actor_id, AuditAction.PERSON_CREATE, person.id,
            None, changelog.snapshot_person(person),
            description=f"Created {person.name}",
        )
    logger.info("Created person %s (%s)", person.id, person.name)
    return person


def bulk_create_children(db: Session, actor_id: str, parent_id: str,
                         children: list[dict]) -> list[Person]:
    """Create several children of one parent in one transaction.

    Sibling order continues from the parent's current last child. The batch
    holds the parent's advisory lock throughout, so concurrent batches never
    hand out the same order. One layout recalculation is requested afterwards.
    """
    parent = get_person(db, parent_id)
    if evaluate(db, actor_id, parent_id) != PermissionLevel.FULL:
        raise Unauthorized()
    if not children:
        raise InvalidValue("no children given")
    parent_field = (EditableField.FATHER_ID if parent.gender == Gender.MALE
                    else EditableField.MOTHER_ID)

    created = []
    with advisory_lock(db, f"children:{parent_id}"), transaction(db):
        start = _max_sibling_order(db, parent_id)
        for index, spec in enumerate(children, start=1):
            details = {k: v for k, v in spec.items() if k not in ("name", "gender")}
            try:
                person = _new_person(db, spec.get("name"), spec.get("gender"), details)
                guard.set_field(db, person, parent_field, parent_id)
            except InvalidValue as e:
                raise InvalidValue(f"child {index}: {e}") from None
            person.sibling_order = start + index
            db.add(person)
            db.flush()
            changelog.record_entry(
                db, actor_id, AuditAction.PERSON_CREATE, person.id,
                None, changelog.snapshot_person(person),
                description=f"Created {person.name} as child of {parent.name} (bulk)",
            )
            created.append(person)
    logger.info("Created %d children under %s for %s", len(created), parent_id, actor_id)
    events.emit(events.LAYOUT_RECALCULATE, {
        "parent_id": parent_id,
        "person_ids": [p.id for p in created],
        "reason": "bulk_children",
    })
    return created


# ── Marriages ──

def _marriage_snapshot(m: Marriage) -> dict:
    return {
        "id": m.id,
        "husband_id": m.husband_id,
        "wife_id": m.wife_id,
        "status": m.status.value,
        "marriage_order": m.marriage_order,
        "start_date": m.start_date,
        "end_date": m.end_date,
        "deleted_at": changelog.plain(m.deleted_at),
    }


def _current_marriage(db: Session, person_id: str) -> Marriage | None:
    return (
        db.query(Marriage)
        .filter(or_(Marriage.husband_id == person_id, Marriage.wife_id == person_id),
                Marriage.status == MarriageStatus.CURRENT,
                Marriage.deleted_at.is_(None))
        .first()
    )


def _require_partner_access(db: Session, actor_id: str, m_husband: str, m_wife: str):
    if (evaluate(db, actor_id, m_husband) != PermissionLevel.FULL
            and evaluate(db, actor_id, m_wife) != PermissionLevel.FULL):
        raise Unauthorized()


def list_marriages(db: Session, person_id: str) -> list[Marriage]:
    return (
        db.query(Marriage)
        .filter(or_(Marriage.husband_id == person_id, Marriage.wife_id == person_id),
                Marriage.deleted_at.is_(None))
        .order_by(Marriage.marriage_order)
        .all()
    )


def get_marriage(db: Session, marriage_id: str) -> Marriage:
    m = db.get(Marriage, marriage_id)
    if m is None or m.deleted_at is not None:
        raise NotFound("Marriage not found")
    return m


def create_marriage(db: Session, actor_id: str, husband_id: str, wife_id: str,
                    status: str = "current", start_date: str | None = None,
                    end_date: str | None = None) -> Marriage:
    """Record a marriage. A partner can be in at most one current marriage."""
    if husband_id == wife_id:
        raise InvalidValue("a person cannot marry themselves")
    husband = get_person(db, husband_id)
    wife = get_person(db, wife_id)
    if husband.gender != Gender.MALE:
        raise InvalidValue("husband must be male")
    if wife.gender != Gender.FEMALE:
        raise InvalidValue("wife must be female")
    try:
        status = MarriageStatus(status)
    except ValueError:
        raise InvalidValue(f"unknown marriage status {status!r}") from None
    _require_partner_access(db, actor_id, husband_id, wife_id)

    with registry.hold(f"marriage:{husband_id}", f"marriage:{wife_id}"), transaction(db):
        if status == MarriageStatus.CURRENT:
            for partner in (husband, wife):
                if _current_marriage(db, partner.id) is not None:
                    raise MarriageConflict(f"{partner.name} already has a current marriage")
        order = (
            db.query(func.count(Marriage.id))
            .filter(Marriage.husband_id == husband_id, Marriage.deleted_at.is_(None))
            .scalar()
        ) + 1
        marriage = Marriage(husband_id=husband_id, wife_id=wife_id, status=status,
                            marriage_order=order, start_date=start_date, end_date=end_date)
        db.add(marriage)
        db.flush()
        changelog.record_entry(
            db, actor_id, AuditAction.MARRIAGE_CREATE, marriage.id,
            None, _marriage_snapshot(marriage), record_type="marriage",
            description=f"Married {husband.name} and {wife.name}",
            severity=Severity.MEDIUM, revertible=False,
        )
    logger.info("Marriage %s created between %s and %s", marriage.id, husband_id, wife_id)
    return marriage


def end_marriage(db: Session, actor_id: str, marriage_id: str,
                 end_date: str | None = None) -> Marriage:
    """Move a current marriage to past. Ending a past marriage changes nothing."""
    marriage = get_marriage(db, marriage_id)
    _require_partner_access(db, actor_id, marriage.husband_id, marriage.wife_id)
    if marriage.status == MarriageStatus.PAST:
        return marriage
    with registry.hold(f"marriage:{marriage.husband_id}", f"marriage:{marriage.wife_id}"), \
            transaction(db):
        before = _marriage_snapshot(marriage)
        marriage.status = MarriageStatus.PAST
        marriage.end_date = end_date or marriage.end_date
        changelog.record_entry(
            db, actor_id, AuditAction.MARRIAGE_UPDATE, marriage.id,
            before, _marriage_snapshot(marriage), record_type="marriage",
            description="Marriage ended", severity=Severity.MEDIUM, revertible=False,
        )
    return marriage


def delete_marriage(db: Session, actor_id: str, marriage_id: str) -> Marriage:
    marriage = get_marriage(db, marriage_id)
    _require_partner_access(db, actor_id, marriage.husband_id, marriage.wife_id)
    with transaction(db):
        before = _marriage_snapshot(marriage)
        marriage.deleted_at = utcnow()
        changelog.record_entry(
            db, actor_id, AuditAction.MARRIAGE_UPDATE, marriage.id,
            before, _marriage_snapshot(marriage), record_type="marriage",
            description="Marriage removed", severity=Severity.HIGH, revertible=False,
        )
    logger.info("Marriage %s removed by %s", marriage_id, actor_id)
    return marriage
