"""Access levels, roles, branch moderator grants and suggestion blocks."""
import enum
import logging

from sqlalchemy.orm import Session

from . import changelog, relations
from .db import transaction
from .errors import NotFound, Unauthorized
from .locks import record_lock
from .models import (
    AuditAction, BranchModeratorGrant, EditSuggestion, Person, Role, RoleGrant, Severity,
    SuggestionBlock, SuggestionStatus, utcnow,
)

logger = logging.getLogger(__name__)


class PermissionLevel(str, enum.Enum):
    FULL = "full"
    SUGGEST = "suggest"
    BLOCKED = "blocked"
    NONE = "none"


ADMIN_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})
REVIEWER_ROLES = frozenset({Role.MODERATOR, Role.ADMIN, Role.SUPER_ADMIN})


def evaluate(db: Session, actor_id: str | None, target_id: str | None,
             include_deleted_target: bool = False) -> PermissionLevel:
    """Resolve what actor may do to target. First matching rule wins.

    Blocking is consulted only after every kinship rule, so it restricts
    strangers and never a close relative.
    """
    actor = relations.get_person(db, actor_id)
    target = relations.get_person(db, target_id, include_deleted=include_deleted_target)
    if actor is None or target is None:
        return PermissionLevel.NONE
    if actor.role in ADMIN_ROLES:
        return PermissionLevel.FULL
    if actor.id == target.id:
        return PermissionLevel.FULL
    if relations.is_ancestor(db, actor.id, target.id):
        return PermissionLevel.FULL
    if target.id in (actor.father_id, actor.mother_id):
        return PermissionLevel.FULL
    if relations.is_descendant(db, actor.id, target.id):
        return PermissionLevel.FULL
    if relations.are_siblings(db, actor.id, target.id):
        return PermissionLevel.FULL
    if relations.are_spouses(db, actor.id, target.id):
        return PermissionLevel.FULL
    if covers_branch(db, actor.id, target.id):
        return PermissionLevel.FULL
    if is_blocked(db, actor.id):
        return PermissionLevel.BLOCKED
    return PermissionLevel.SUGGEST


def is_admin(db: Session, actor_id: str | None) -> bool:
    actor = relations.get_person(db, actor_id)
    return actor is not None and actor.role in ADMIN_ROLES


def has_reviewer_role(db: Session, actor_id: str | None) -> bool:
    actor = relations.get_person(db, actor_id)
    return actor is not None and actor.role in REVIEWER_ROLES


def _require_admin(db: Session, actor_id: str | None) -> Person:
    actor = relations.get_person(db, actor_id)
    if actor is None or actor.role not in ADMIN_ROLES:
        raise Unauthorized("Admin access required")
    return actor


def _require_person(db: Session, person_id: str) -> Person:
    person = relations.get_person(db, person_id)
    if person is None:
        raise NotFound("Person not found")
    return person


# ── Roles ──

def set_role(db: Session, actor_id: str, target_id: str, role: Role) -> Person:
    """Change a person's role. Only a super admin may do this, and never to demote themselves."""
    role = Role(role)
    actor = relations.get_person(db, actor_id)
    if actor is None or actor.role != Role.SUPER_ADMIN:
        raise Unauthorized("Only a super admin can change roles")
    _require_person(db, target_id)
    if target_id == actor.id and role != Role.SUPER_ADMIN:
        raise Unauthorized("Cannot demote yourself")

    with record_lock(target_id), transaction(db):
        target = relations.get_person(db, target_id, for_update=True)
        previous = target.role
        if previous == role:
            return target
        db.add(RoleGrant(person_id=target.id, role=role, previous_role=previous,
                         granted_by=actor.id))
        target.role = role
        changelog.record_entry(
            db, actor.id, AuditAction.ROLE_CHANGE, target.id,
            {"role": previous.value}, {"role": role.value},
            description=f"Changed role of {target.name} from {previous.value} to {role.value}",
            severity=Severity.HIGH, revertible=False,
        )
    logger.info("Role of %s changed %s -> %s by %s", target_id, previous.value, role.value, actor_id)
    return target


def bootstrap_super_admin(db: Session, person_id: str) -> Person:
    """Grant super admin to the first person. Refused once any super admin exists."""
    if db.query(Person.id).filter(Person.role == Role.SUPER_ADMIN).first() is not None:
        raise Unauthorized("A super admin already exists")
    _require_person(db, person_id)
    with record_lock(person_id), transaction(db):
        person = relations.get_person(db, person_id, for_update=True)
        db.add(RoleGrant(person_id=person.id, role=Role.SUPER_ADMIN, previous_role=person.role))
        changelog.record_entry(
            db, None, AuditAction.ROLE_CHANGE, person.id,
            {"role": person.role.value}, {"role": Role.SUPER_ADMIN.value},
            description=f"Bootstrapped {person.name} as super admin",
            severity=Severity.HIGH, revertible=False,
        )
        person.role = Role.SUPER_ADMIN
    logger.info("Bootstrapped super admin %s", person_id)
    return person


def role_history(db: Session, person_id: str) -> list[RoleGrant]:
    return (
        db.query(RoleGrant)
        .filter(RoleGrant.person_id == person_id)
        .order_by(RoleGrant.created_at)
        .all()
    )


# ── Branch moderators ──

def active_grants(db: Session, user_id: str) -> list[BranchModeratorGrant]:
    return (
        db.query(BranchModeratorGrant)
        .filter(BranchModeratorGrant.user_id == user_id, BranchModeratorGrant.is_active.is_(True))
        .order_by(BranchModeratorGrant.created_at)
        .all()
    )


def covers_branch(db: Session, actor_id: str, target_id: str) -> bool:
    """Whether one of actor's active grants is rooted at target or above it."""
    return any(relations.branch_contains(db, g.root_id, target_id)
               for g in active_grants(db, actor_id))


def grant_branch_moderator(db: Session, admin_id: str, user_id: str, root_id: str,
                           notes: str | None = None) -> str:
    """Make user the moderator of root's branch. A branch has one active moderator."""
    admin = _require_admin(db, admin_id)
    user = _require_person(db, user_id)
    root = _require_person(db, root_id)
    with transaction(db):
        previous = (
            db.query(BranchModeratorGrant)
            .filter(BranchModeratorGrant.root_id == root.id, BranchModeratorGrant.is_active.is_(True))
            .all()
        )
        for old in previous:
            old.is_active = False
            old.revoked_at = utcnow()
        grant = BranchModeratorGrant(user_id=user.id, root_id=root.id, assigned_by=admin.id,
                                     notes=notes)
        db.add(grant)
        db.flush()
        changelog.record_entry(
            db, admin.id, AuditAction.MODERATOR_GRANT, grant.id,
            None, {"user_id": user.id, "root_id": root.id, "replaced": [g.id for g in previous]},
            record_type="branch_moderator",
            description=f"Assigned {user.name} as moderator of {root.name}'s branch",
            severity=Severity.MEDIUM, revertible=False,
        )
    logger.info("Branch moderator %s granted on %s by %s", user.id, root.id, admin.id)
    return grant.id


def revoke_branch_moderator(db: Session, admin_id: str, user_id: str, root_id: str) -> str:
    admin = _require_admin(db, admin_id)
    grant = (
        db.query(BranchModeratorGrant)
        .filter(BranchModeratorGrant.user_id == user_id,
                BranchModeratorGrant.root_id == root_id,
                BranchModeratorGrant.is_active.is_(True))
        .first()
    )
    if grant is None:
        raise NotFound("No active moderator grant for this branch")
    with transaction(db):
        grant.is_active = False
        grant.revoked_at = utcnow()
        changelog.record_entry(
            db, admin.id, AuditAction.MODERATOR_REVOKE, grant.id,
            {"user_id": user_id, "root_id": root_id, "is_active": True},
            {"user_id": user_id, "root_id": root_id, "is_active": False},
            record_type="branch_moderator",
            description=f"Removed branch moderator {user_id} from {root_id}",
            severity=Severity.MEDIUM, revertible=False,
        )
    logger.info("Branch moderator %s revoked on %s by %s", user_id, root_id, admin.id)
    return grant.id


def moderated_branches(db: Session, user_id: str) -> list[dict]:
    branches = []
    for grant in active_grants(db, user_id):
        root = relations.get_person(db, grant.root_id, include_deleted=True)
        branches.append({
            "grant_id": grant.id,
            "root_id": grant.root_id,
            "root_name": root.name if root else "",
            "created_at": grant.created_at,
        })
    return branches


# ── Suggestion blocks ──

def active_block(db: Session, person_id: str) -> SuggestionBlock | None:
    return (
        db.query(SuggestionBlock)
        .filter(SuggestionBlock.person_id == person_id, SuggestionBlock.is_active.is_(True))
        .first()
    )


def is_blocked(db: Session, person_id: str) -> bool:
    return active_block(db, person_id) is not None


def block_from_suggesting(db: Session, admin_id: str, target_id: str,
                          reason: str | None = None) -> str:
    """Block target from proposing suggestions. Blocking an already blocked person is a no-op."""
    admin = _require_admin(db, admin_id)
    target = _require_person(db, target_id)
    if target.id == admin.id:
        raise Unauthorized("Cannot block yourself")
    existing = active_block(db, target.id)
    if existing is not None:
        return existing.id
    with transaction(db):
        block = SuggestionBlock(person_id=target.id, blocked_by=admin.id, reason=reason)
        db.add(block)
        db.flush()
        changelog.record_entry(
            db, admin.id, AuditAction.SUGGESTION_BLOCK, block.id,
            None, {"person_id": target.id, "reason": reason},
            record_type="suggestion_block",
            description=f"Blocked {target.name} from suggesting" + (f": {reason}" if reason else ""),
            severity=Severity.MEDIUM, revertible=False,
        )
    logger.info("Person %s blocked from suggesting by %s", target.id, admin.id)
    return block.id


def unblock_from_suggesting(db: Session, admin_id: str, target_id: str) -> bool:
    """Lift an active block. Returns False if there was none."""
    admin = _require_admin(db, admin_id)
    block = active_block(db, target_id)
    if block is None:
        return False
    with transaction(db):
        block.is_active = False
        block.lifted_at = utcnow()
        block.lifted_by = admin.id
        changelog.record_entry(
            db, admin.id, AuditAction.SUGGESTION_UNBLOCK, block.id,
            {"person_id": target_id, "is_active": True},
            {"person_id": target_id, "is_active": False},
            record_type="suggestion_block",
            description=f"Unblocked {target_id} from suggesting",
            severity=Severity.LOW, revertible=False,
        )
    logger.info("Person %s unblocked by %s", target_id, admin.id)
    return True


def permission_summary(db: Session, person_id: str) -> dict:
    person = _require_person(db, person_id)
    block = active_block(db, person.id)
    pending = (
        db.query(EditSuggestion)
        .filter(EditSuggestion.target_id == person.id,
                EditSuggestion.status == SuggestionStatus.PENDING)
        .count()
    )
    return {
        "person_id": person.id,
        "role": person.role.value,
        "is_admin": person.role in ADMIN_ROLES,
        "can_review": person.role in REVIEWER_ROLES,
        "moderated_branches": moderated_branches(db, person.id),
        "is_blocked": block is not None,
        "block_reason": block.reason if block else None,
        "pending_suggestions": pending,
    }
