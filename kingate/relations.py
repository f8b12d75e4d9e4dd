"""Relationship queries over parent pointers and marriages.

Every upward or downward walk keeps a visited set and never expands a node
twice, so historical cyclic parent data yields a bounded answer instead of
looping. Cycles themselves are reported only by find_parent_cycles().
"""
import logging

from sqlalchemy import or_, and_
from sqlalchemy.orm import Session, aliased

from .errors import CycleDetected
from .models import Person, Marriage, MarriageStatus

logger = logging.getLogger(__name__)

MAX_GENERATIONS = 10


def get_person(db: Session, person_id: str | None, include_deleted: bool = False,
               for_update: bool = False) -> Person | None:
    """Load a person; soft-deleted people count as absent unless include_deleted.

    for_update re-reads the row under SELECT ... FOR UPDATE, refreshing any
    copy already held by the session.
    """
    if not person_id:
        return None
    if for_update:
        person = (
            db.query(Person)
            .filter(Person.id == person_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
    else:
        person = db.get(Person, person_id)
    if person is None or (person.deleted_at is not None and not include_deleted):
        return None
    return person


def ancestor_ids(db: Session, person_id: str, max_depth: int | None = MAX_GENERATIONS) -> set[str]:
    """Ids reachable by following father/mother pointers up from person_id.

    The starting person is never part of the result, even when a pointer
    leads back to it.
    """
    seen = {person_id}
    found = set()
    frontier = [person_id]
    depth = 0
    while frontier and (max_depth is None or depth < max_depth):
        depth += 1
        rows = db.query(Person.father_id, Person.mother_id).filter(Person.id.in_(frontier)).all()
        next_frontier = []
        for father_id, mother_id in rows:
            for parent_id in (father_id, mother_id):
                if parent_id and parent_id not in seen:
                    seen.add(parent_id)
                    found.add(parent_id)
                    next_frontier.append(parent_id)
        frontier = next_frontier
    return found


def is_ancestor(db: Session, a: str, b: str) -> bool:
    """True if a is an ancestor of b within MAX_GENERATIONS."""
    if a == b:
        return False
    return a in ancestor_ids(db, b)


def is_descendant(db: Session, a: str, b: str) -> bool:
    """True if a is a descendant of b within MAX_GENERATIONS."""
    return is_ancestor(db, b, a)


def all_descendants(db: Session, root_id: str) -> set[str]:
    """Every live descendant of root_id, at any depth."""
    seen = {root_id}
    found = set()
    frontier = [root_id]
    while frontier:
        rows = (
            db.query(Person.id)
            .filter(
                or_(Person.father_id.in_(frontier), Person.mother_id.in_(frontier)),
                Person.deleted_at.is_(None),
            )
            .all()
        )
        next_frontier = []
        for (child_id,) in rows:
            if child_id not in seen:
                seen.add(child_id)
                found.add(child_id)
                next_frontier.append(child_id)
        frontier = next_frontier
    return found


def branch_contains(db: Session, root_id: str, person_id: str) -> bool:
    """Whether person_id is root_id or one of all_descendants(root_id).

    Walks upward from person_id instead of enumerating the whole branch.
    Soft-deleted people end a path just as they do in all_descendants().
    """
    if root_id == person_id:
        return True
    seen = {person_id}
    frontier = [person_id]
    while frontier:
        rows = (
            db.query(Person.id, Person.father_id, Person.mother_id, Person.deleted_at)
            .filter(Person.id.in_(frontier))
            .all()
        )
        next_frontier = []
        for pid, father_id, mother_id, deleted_at in rows:
            if deleted_at is not None and pid != person_id:
                continue
            for parent_id in (father_id, mother_id):
                if not parent_id or parent_id in seen:
                    continue
                if parent_id == root_id:
                    return True
                seen.add(parent_id)
                next_frontier.append(parent_id)
        frontier = next_frontier
    return False


def are_siblings(db: Session, a: str, b: str) -> bool:
    """True if a and b share a non-null father or mother."""
    if a == b:
        return False
    rows = {
        pid: (father_id, mother_id)
        for pid, father_id, mother_id in db.query(Person.id, Person.father_id, Person.mother_id)
        .filter(Person.id.in_([a, b]))
    }
    if len(rows) < 2:
        return False
    father_a, mother_a = rows[a]
    father_b, mother_b = rows[b]
    return (father_a is not None and father_a == father_b) or (
        mother_a is not None and mother_a == mother_b
    )


def are_spouses(db: Session, a: str, b: str) -> bool:
    """True if a current, non-deleted marriage links a and b."""
    if a == b:
        return False
    found = (
        db.query(Marriage.id)
        .filter(
            Marriage.status == MarriageStatus.CURRENT,
            Marriage.deleted_at.is_(None),
            or_(
                and_(Marriage.husband_id == a, Marriage.wife_id == b),
                and_(Marriage.husband_id == b, Marriage.wife_id == a),
            ),
        )
        .first()
    )
    return found is not None


# ── Diagnostics ──

def find_parent_cycles(db: Session) -> list[dict]:
    """List self-referencing people and two-person parent cycles for operator remediation."""
    cycles = []
    self_refs = (
        db.query(Person.id, Person.name)
        .filter(or_(Person.father_id == Person.id, Person.mother_id == Person.id))
        .order_by(Person.name)
        .all()
    )
    for pid, name in self_refs:
        cycles.append({"kind": "self", "person_ids": [pid], "names": [name]})

    parent = aliased(Person)
    mutual = (
        db.query(Person.id, Person.name, parent.id, parent.name)
        .join(parent, or_(Person.father_id == parent.id, Person.mother_id == parent.id))
        .filter(
            or_(parent.father_id == Person.id, parent.mother_id == Person.id),
            Person.id < parent.id,
        )
        .all()
    )
    for a_id, a_name, b_id, b_name in mutual:
        cycles.append({"kind": "mutual", "person_ids": [a_id, b_id], "names": [a_name, b_name]})

    if cycles:
        logger.warning("Found %d parent cycle(s): %s", len(cycles),
                       [c["person_ids"] for c in cycles])
    return cycles


def check_parent_integrity(db: Session):
    cycles = find_parent_cycles(db)
    if cycles:
        raise CycleDetected(cycles)


# ── Structure-only projection ──

def build_structure(db: Session, root_id: str | None = None) -> dict:
    """Nodes and edges for bulk rendering, without descriptive fields."""
    query = db.query(Person).filter(Person.deleted_at.is_(None))
    if root_id is not None:
        query = query.filter(Person.id.in_(all_descendants(db, root_id) | {root_id}))
    people = query.order_by(Person.generation, Person.sibling_order, Person.name).all()
    ids = {p.id for p in people}

    nodes = [{
        "data": {"id": p.id, "label": p.name, "gender": p.gender.value,
                 "generation": p.generation, "sibling_order": p.sibling_order}
    } for p in people]

    edges = []
    for p in people:
        for parent_id in (p.father_id, p.mother_id):
            if parent_id and parent_id in ids:
                edges.append({"data": {"id": f"{parent_id}:{p.id}", "source": parent_id,
                                       "target": p.id, "type": "parent"}})
    marriages = (
        db.query(Marriage)
        .filter(Marriage.deleted_at.is_(None), Marriage.husband_id.in_(ids), Marriage.wife_id.in_(ids))
        .order_by(Marriage.marriage_order)
        .all()
    )
    for m in marriages:
        edges.append({"data": {"id": m.id, "source": m.husband_id, "target": m.wife_id,
                               "type": "marriage", "status": m.status.value}})
    return {"nodes": nodes, "edges": edges}
