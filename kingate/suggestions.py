"""Single-field edit suggestions: propose, approve, reject, cancel.

Status moves once, from pending to approved, rejected or cancelled. Approval
writes through the mutation guard at the record's current version.
"""
import logging
import os
from datetime import datetime, time, timezone

from sqlalchemy.orm import Session

from . import changelog, events, guard, relations
from .db import transaction
from .errors import AlreadyProcessed, InvalidField, NotFound, RateLimited, Unauthorized
from .locks import record_lock, registry
from .models import (
    AuditAction, BranchModeratorGrant, EditSuggestion, Person, Severity, SuggestionStatus, utcnow,
)
from .permissions import REVIEWER_ROLES, PermissionLevel, active_grants, covers_branch, evaluate

logger = logging.getLogger(__name__)

MAX_NOTIFIED_APPROVERS = 50
# Per reviewer, per outcome, per UTC day.
REVIEW_DAILY_LIMIT = int(os.environ.get("REVIEW_DAILY_LIMIT", "100"))


def approvers_for(db: Session, target_id: str, exclude: str | None = None) -> list[str]:
    """People to notify about a new suggestion: the target, branch moderators over it, then reviewers by role."""
    moderators = [
        grant.user_id
        for grant in db.query(BranchModeratorGrant).filter(BranchModeratorGrant.is_active.is_(True))
        if relations.branch_contains(db, grant.root_id, target_id)
    ]
    reviewers = [
        person_id for (person_id,) in db.query(Person.id)
        .filter(Person.role.in_(REVIEWER_ROLES), Person.deleted_at.is_(None))
        .order_by(Person.name)
    ]
    seen = set()
    approvers = []
    for person_id in [target_id, *moderators, *reviewers]:
        if person_id == exclude or person_id in seen:
            continue
        seen.add(person_id)
        approvers.append(person_id)
    return approvers[:MAX_NOTIFIED_APPROVERS]


def propose(db: Session, proposer_id: str, target_id: str, field: str, value,
            reason: str | None = None) -> EditSuggestion:
    """Store a proposed change. Proposer needs full or suggest level on the target."""
    level = evaluate(db, proposer_id, target_id)
    if level not in (PermissionLevel.FULL, PermissionLevel.SUGGEST):
        raise Unauthorized("Not permitted to suggest changes for this person")
    parsed = guard.parse_field(field)
    if parsed not in guard.SUGGESTIBLE_FIELDS:
        raise InvalidField(parsed.value)
    new_value = changelog.plain(guard.coerce_value(parsed, value))
    target = relations.get_person(db, target_id)

    with transaction(db):
        suggestion = EditSuggestion(
            target_id=target.id,
            proposer_id=proposer_id,
            field=parsed.value,
            old_value=changelog.plain(getattr(target, parsed.value)),
            new_value=new_value,
            reason=reason,
        )
        db.add(suggestion)
        db.flush()
    logger.info("Suggestion %s: %s proposes %s on %s", suggestion.id, proposer_id,
                parsed.value, target_id)
    events.emit(events.SUGGESTION_CREATED, {
        "suggestion_id": suggestion.id,
        "target_id": target_id,
        "proposer_id": proposer_id,
        "field": parsed.value,
        "notify": approvers_for(db, target_id, exclude=proposer_id),
    })
    return suggestion


def get_suggestion(db: Session, suggestion_id: str) -> EditSuggestion:
    suggestion = db.get(EditSuggestion, suggestion_id)
    if suggestion is None:
        raise NotFound("Suggestion not found")
    return suggestion


def can_review(db: Session, reviewer_id: str, suggestion: EditSuggestion) -> bool:
    reviewer = relations.get_person(db, reviewer_id)
    if reviewer is None or reviewer.id == suggestion.proposer_id:
        return False
    if reviewer.role in REVIEWER_ROLES or reviewer.id == suggestion.target_id:
        return True
    return covers_branch(db, reviewer.id, suggestion.target_id)


def reviews_today(db: Session, reviewer_id: str, status: SuggestionStatus) -> int:
    start = datetime.combine(utcnow().date(), time.min, tzinfo=timezone.utc)
    return (
        db.query(EditSuggestion)
        .filter(EditSuggestion.reviewed_by == reviewer_id,
                EditSuggestion.status == status,
                EditSuggestion.reviewed_at >= start)
        .count()
    )


def _load_for_review(db: Session, reviewer_id: str, suggestion_id: str,
                     outcome: SuggestionStatus) -> EditSuggestion:
    suggestion = (
        db.query(EditSuggestion)
        .filter(EditSuggestion.id == suggestion_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if suggestion is None:
        raise NotFound("Suggestion not found")
    if not can_review(db, reviewer_id, suggestion):
        raise Unauthorized("Not permitted to review this suggestion")
    if suggestion.status != SuggestionStatus.PENDING:
        raise AlreadyProcessed(f"Suggestion already {suggestion.status.value}")
    if reviews_today(db, reviewer_id, outcome) >= REVIEW_DAILY_LIMIT:
        logger.warning("Reviewer %s reached the daily %s limit", reviewer_id, outcome.value)
        raise RateLimited(f"Daily limit of {REVIEW_DAILY_LIMIT} {outcome.value} suggestions reached")
    return suggestion


def _reviewed(suggestion: EditSuggestion):
    events.emit(events.SUGGESTION_REVIEWED, {
        "suggestion_id": suggestion.id,
        "status": suggestion.status.value,
        "proposer_id": suggestion.proposer_id,
        "reviewer_id": suggestion.reviewed_by,
    })


def approve(db: Session, reviewer_id: str, suggestion_id: str) -> EditSuggestion:
    with registry.hold(f"suggestion:{suggestion_id}"):
        suggestion = _load_for_review(db, reviewer_id, suggestion_id, SuggestionStatus.APPROVED)
        field = guard.parse_field(suggestion.field)
        with record_lock(suggestion.target_id), transaction(db):
            current = relations.get_person(db, suggestion.target_id, for_update=True)
            if current is None:
                raise NotFound("Person not found")
            person, before, after = guard.guarded_apply(
                db, current.id, current.version, reviewer_id,
                lambda p: guard.set_field(db, p, field, suggestion.new_value),
            )
            entry = changelog.record_entry(
                db, reviewer_id, AuditAction.SUGGESTION_APPROVE, person.id, before, after,
                description=f"Approved suggestion to change {field.value} on {person.name}",
                severity=Severity.LOW, suggestion_id=suggestion.id,
            )
            suggestion.status = SuggestionStatus.APPROVED
            suggestion.reviewed_by = reviewer_id
            suggestion.reviewed_at = utcnow()
            suggestion.audit_id = entry.id
    logger.info("Suggestion %s approved by %s", suggestion_id, reviewer_id)
    events.emit(events.PERSON_CHANGED,
                {"person_id": suggestion.target_id, "audit_id": entry.id, "actor_id": reviewer_id})
    _reviewed(suggestion)
    return suggestion


def reject(db: Session, reviewer_id: str, suggestion_id: str,
           reason: str | None = None) -> EditSuggestion:
    """Reject a pending suggestion. Audited even though no data changes."""
    with registry.hold(f"suggestion:{suggestion_id}"):
        suggestion = _load_for_review(db, reviewer_id, suggestion_id, SuggestionStatus.REJECTED)
        target = relations.get_person(db, suggestion.target_id, include_deleted=True)
        current = {suggestion.field: changelog.plain(getattr(target, suggestion.field, None))}
        with transaction(db):
            suggestion.status = SuggestionStatus.REJECTED
            suggestion.reviewed_by = reviewer_id
            suggestion.reviewed_at = utcnow()
            suggestion.rejection_reason = reason
            entry = changelog.record_entry(
                db, reviewer_id, AuditAction.SUGGESTION_REJECT, suggestion.target_id,
                current, dict(current),
                description=f"Rejected suggestion to change {suggestion.field}"
                            + (f": {reason}" if reason else ""),
                suggestion_id=suggestion.id, revertible=False,
            )
            suggestion.audit_id = entry.id
    logger.info("Suggestion %s rejected by %s", suggestion_id, reviewer_id)
    _reviewed(suggestion)
    return suggestion


def cancel(db: Session, proposer_id: str, suggestion_id: str) -> EditSuggestion:
    """Withdraw one's own pending suggestion."""
    with registry.hold(f"suggestion:{suggestion_id}"):
        suggestion = (
            db.query(EditSuggestion)
            .filter(EditSuggestion.id == suggestion_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if suggestion is None:
            raise NotFound("Suggestion not found")
        if suggestion.proposer_id != proposer_id:
            raise Unauthorized("Only the proposer can cancel a suggestion")
        if suggestion.status != SuggestionStatus.PENDING:
            raise AlreadyProcessed(f"Suggestion already {suggestion.status.value}")
        with transaction(db):
            suggestion.status = SuggestionStatus.CANCELLED
            suggestion.reviewed_at = utcnow()
    logger.info("Suggestion %s cancelled by %s", suggestion_id, proposer_id)
    return suggestion


def list_pending_for_reviewer(db: Session, reviewer_id: str, limit: int = 50,
                              offset: int = 0) -> list[EditSuggestion]:
    """Pending suggestions the reviewer may act on, oldest first."""
    limit = max(1, min(int(limit), 200))
    offset = max(0, int(offset))
    reviewer = relations.get_person(db, reviewer_id)
    if reviewer is None:
        return []
    query = db.query(EditSuggestion).filter(
        EditSuggestion.status == SuggestionStatus.PENDING,
        EditSuggestion.proposer_id != reviewer.id,
    )
    if reviewer.role not in REVIEWER_ROLES:
        reachable = {reviewer.id}
        for grant in active_grants(db, reviewer.id):
            reachable.add(grant.root_id)
            reachable |= relations.all_descendants(db, grant.root_id)
        query = query.filter(EditSuggestion.target_id.in_(reachable))
    return query.order_by(EditSuggestion.created_at).offset(offset).limit(limit).all()


def list_by_proposer(db: Session, proposer_id: str,
                     status: SuggestionStatus | None = None) -> list[EditSuggestion]:
    query = db.query(EditSuggestion).filter(EditSuggestion.proposer_id == proposer_id)
    if status is not None:
        query = query.filter(EditSuggestion.status == SuggestionStatus(status))
    return query.order_by(EditSuggestion.created_at.desc()).all()


def pending_count(db: Session, target_id: str | None = None) -> int:
    query = db.query(EditSuggestion).filter(EditSuggestion.status == SuggestionStatus.PENDING)
    if target_id:
        query = query.filter(EditSuggestion.target_id == target_id)
    return query.count()
