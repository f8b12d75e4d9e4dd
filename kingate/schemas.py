from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from .models import (
    AuditAction, Gender, MarriageStatus, PersonStatus, Role, Severity, SuggestionStatus,
)


class _ORM(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Auth ──

class SetupRequest(BaseModel):
    token: str
    email: str
    password: str
    name: str
    gender: Literal["male", "female"]


class LoginRequest(BaseModel):
    email: str
    password: str


class AccountCreate(BaseModel):
    email: str
    password: str
    person_id: str


class AccountOut(_ORM):
    id: str
    email: str
    person_id: str


# ── People ──

class PersonCreate(BaseModel):
    name: str
    gender: Literal["male", "female"]
    father_id: Optional[str] = None
    mother_id: Optional[str] = None
    details: dict[str, Any] = {}

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v):
        if not v.strip():
            raise ValueError("name is required")
        return v.strip()


class PersonOut(_ORM):
    id: str
    name: str
    gender: Gender
    generation: int
    father_id: Optional[str] = None
    mother_id: Optional[str] = None
    sibling_order: int
    status: PersonStatus
    bio: Optional[str] = None
    birth_date: Optional[str] = None
    death_date: Optional[str] = None
    birth_place: Optional[str] = None
    current_residence: Optional[str] = None
    occupation: Optional[str] = None
    education: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    role: Role
    version: int
    deleted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


class MutationRequest(BaseModel):
    expected_version: int
    changes: dict[str, Any]

    @field_validator("changes")
    @classmethod
    def changes_not_empty(cls, v):
        if not v:
            raise ValueError("changes must not be empty")
        return v


class ChildIn(BaseModel):
    name: str
    gender: Literal["male", "female"]
    details: dict[str, Any] = {}


class BulkChildrenRequest(BaseModel):
    children: list[ChildIn]


class PermissionOut(BaseModel):
    actor_id: str
    target_id: str
    level: Literal["full", "suggest", "blocked", "none"]


# ── Marriages ──

class MarriageCreate(BaseModel):
    husband_id: str
    wife_id: str
    status: Literal["current", "past"] = "current"
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class MarriageEnd(BaseModel):
    end_date: Optional[str] = None


class MarriageOut(_ORM):
    id: str
    husband_id: str
    wife_id: str
    status: MarriageStatus
    marriage_order: int
    start_date: Optional[str] = None
    end_date: Optional[str] = None


# ── Suggestions ──

class SuggestionCreate(BaseModel):
    target_id: str
    field: str
    value: Any = None
    reason: Optional[str] = None


class ReviewRequest(BaseModel):
    reason: Optional[str] = None


class SuggestionOut(_ORM):
    id: str
    target_id: str
    proposer_id: str
    field: str
    old_value: Any = None
    new_value: Any = None
    reason: Optional[str] = None
    status: SuggestionStatus
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    audit_id: Optional[str] = None
    created_at: datetime


# ── Audit ──

class AuditEntryOut(_ORM):
    id: str
    actor_id: Optional[str] = None
    action: AuditAction
    record_type: str
    record_id: str
    old_data: Optional[dict] = None
    new_data: Optional[dict] = None
    changed_fields: list[str]
    description: str
    severity: Severity
    suggestion_id: Optional[str] = None
    reverts_id: Optional[str] = None
    is_revertible: bool
    reverted_at: Optional[datetime] = None
    reverted_by: Optional[str] = None
    revert_reason: Optional[str] = None
    created_at: datetime


class RevertRequest(BaseModel):
    reason: Optional[str] = None


# ── Administration ──

class ModeratorGrantRequest(BaseModel):
    user_id: str
    root_id: str
    notes: Optional[str] = None


class BlockRequest(BaseModel):
    person_id: str
    reason: Optional[str] = None


class RoleRequest(BaseModel):
    role: Literal["none", "moderator", "admin", "super_admin"]
