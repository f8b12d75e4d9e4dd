"""SQLAlchemy models for the family graph, permission state, suggestions and audit ledger."""
import uuid, enum
from typing import Any
from datetime import datetime, timezone
from sqlalchemy import String, Text, ForeignKey, Integer, Boolean, DateTime, Enum, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Gender(enum.Enum):
    MALE = "male"
    FEMALE = "female"


class PersonStatus(enum.Enum):
    ALIVE = "alive"
    DECEASED = "deceased"


class Role(enum.Enum):
    NONE = "none"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class MarriageStatus(enum.Enum):
    CURRENT = "current"
    PAST = "past"


class SuggestionStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class AuditAction(enum.Enum):
    PERSON_CREATE = "person_create"
    PERSON_UPDATE = "person_update"
    PERSON_DELETE = "person_delete"
    SUGGESTION_APPROVE = "suggestion_approve"
    SUGGESTION_REJECT = "suggestion_reject"
    REVERT = "revert"
    MARRIAGE_CREATE = "marriage_create"
    MARRIAGE_UPDATE = "marriage_update"
    MODERATOR_GRANT = "moderator_grant"
    MODERATOR_REVOKE = "moderator_revoke"
    SUGGESTION_BLOCK = "suggestion_block"
    SUGGESTION_UNBLOCK = "suggestion_unblock"
    ROLE_CHANGE = "role_change"


class Severity(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Person(Base):
    __tablename__ = "person"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    gender: Mapped[Gender] = mapped_column(Enum(Gender), nullable=False)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    father_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("person.id"), nullable=True, index=True)
    mother_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("person.id"), nullable=True, index=True)
    sibling_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[PersonStatus] = mapped_column(Enum(PersonStatus), nullable=False, default=PersonStatus.ALIVE)

    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    birth_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    death_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    birth_place: Mapped[str | None] = mapped_column(String(200), nullable=True)
    current_residence: Mapped[str | None] = mapped_column(String(200), nullable=True)
    occupation: Mapped[str | None] = mapped_column(String(200), nullable=True)
    education: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    role: Mapped[Role] = mapped_column(Enum(Role), nullable=False, default=Role.NONE)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Every UPDATE is emitted as "... WHERE id = ? AND version = ?" and bumps version by one.
    __mapper_args__ = {"version_id_col": version}


class Marriage(Base):
    __tablename__ = "marriage"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    husband_id: Mapped[str] = mapped_column(String(36), ForeignKey("person.id"), nullable=False, index=True)
    wife_id: Mapped[str] = mapped_column(String(36), ForeignKey("person.id"), nullable=False, index=True)
    status: Mapped[MarriageStatus] = mapped_column(Enum(MarriageStatus), nullable=False, default=MarriageStatus.CURRENT)
    marriage_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    end_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class BranchModeratorGrant(Base):
    __tablename__ = "branch_moderator_grant"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("person.id"), nullable=False, index=True)
    root_id: Mapped[str] = mapped_column(String(36), ForeignKey("person.id"), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SuggestionBlock(Base):
    __tablename__ = "suggestion_block"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    person_id: Mapped[str] = mapped_column(String(36), ForeignKey("person.id"), nullable=False, index=True)
    blocked_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    lifted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lifted_by: Mapped[str | None] = mapped_column(String(36), nullable=True)


class RoleGrant(Base):
    """Append-only history of role assignments; Person.role holds the current value."""
    __tablename__ = "role_grant"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    person_id: Mapped[str] = mapped_column(String(36), ForeignKey("person.id"), nullable=False, index=True)
    role: Mapped[Role] = mapped_column(Enum(Role), nullable=False)
    previous_role: Mapped[Role] = mapped_column(Enum(Role), nullable=False)
    granted_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class EditSuggestion(Base):
    __tablename__ = "edit_suggestion"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    target_id: Mapped[str] = mapped_column(String(36), ForeignKey("person.id"), nullable=False, index=True)
    proposer_id: Mapped[str] = mapped_column(String(36), ForeignKey("person.id"), nullable=False, index=True)
    field: Mapped[str] = mapped_column(String(50), nullable=False)
    old_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[SuggestionStatus] = mapped_column(
        Enum(SuggestionStatus), nullable=False, default=SuggestionStatus.PENDING, index=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    audit_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AuditEntry(Base):
    __tablename__ = "audit_entry"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False)
    record_type: Mapped[str] = mapped_column(String(50), nullable=False, default="person")
    record_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    old_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    changed_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    severity: Mapped[Severity] = mapped_column(Enum(Severity), nullable=False, default=Severity.LOW)
    suggestion_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reverts_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    is_revertible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reverted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reverted_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    revert_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class Account(Base):
    __tablename__ = "account"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(100), nullable=False)
    person_id: Mapped[str] = mapped_column(String(36), ForeignKey("person.id"), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
