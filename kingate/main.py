import logging
import os

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import auth, changelog, guard, people, permissions, relations, revert, schemas, suggestions
from .db import get_db
from .errors import (
    AlreadyProcessed, CycleDetected, InvalidField, InvalidValue, KingateError, MarriageConflict,
    NotFound, NotRevertible, RateLimited, Unauthorized, VersionConflict,
)
from .models import Role

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="kingate")

_STATUS = [
    (Unauthorized, 403),
    (NotFound, 404),
    (VersionConflict, 409),
    (AlreadyProcessed, 409),
    (NotRevertible, 409),
    (MarriageConflict, 409),
    (CycleDetected, 409),
    (InvalidField, 422),
    (InvalidValue, 422),
    (RateLimited, 429),
]


@app.exception_handler(KingateError)
async def kingate_error(request: Request, exc: KingateError):
    status = next((code for kind, code in _STATUS if isinstance(exc, kind)), 400)
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, VersionConflict):
        body.update(expected=exc.expected, actual=exc.actual)
    if isinstance(exc, CycleDetected):
        body["cycles"] = exc.cycles
    return JSONResponse(body, status_code=status)


@app.get("/health")
def health():
    return {"ok": True}


# ── Auth ──

@app.get("/api/auth/setup-status")
def setup_status(db: Session = Depends(get_db)):
    return {"needs_setup": auth.count_accounts(db) == 0}


@app.post("/api/auth/setup", response_model=schemas.AccountOut)
def setup(body: schemas.SetupRequest, response: Response, db: Session = Depends(get_db)):
    try:
        account = auth.setup_first_account(db, body.token, body.email, body.password,
                                           body.name, body.gender)
    except ValueError as e:
        raise HTTPException(400, str(e))
    response.set_cookie(auth.SESSION_COOKIE, auth.create_session_token(account.id),
                        httponly=True, samesite="lax")
    return account


@app.post("/api/auth/login", response_model=schemas.AccountOut)
def login(body: schemas.LoginRequest, response: Response, db: Session = Depends(get_db)):
    account = auth.authenticate(db, body.email, body.password)
    if account is None:
        raise HTTPException(401, "Invalid email or password")
    response.set_cookie(auth.SESSION_COOKIE, auth.create_session_token(account.id),
                        httponly=True, samesite="lax")
    return account


@app.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(auth.SESSION_COOKIE)
    return {"ok": True}


@app.get("/api/auth/me")
def me(actor_id: str = Depends(auth.get_current_actor), db: Session = Depends(get_db)):
    return permissions.permission_summary(db, actor_id)


@app.post("/api/accounts", response_model=schemas.AccountOut)
def add_account(body: schemas.AccountCreate, actor_id: str = Depends(auth.get_current_actor),
                db: Session = Depends(get_db)):
    if not permissions.is_admin(db, actor_id):
        raise Unauthorized("Admin access required")
    try:
        return auth.create_account(db, body.email, body.password, body.person_id)
    except ValueError as e:
        raise HTTPException(400, str(e))


# ── People ──

@app.get("/api/people/{person_id}", response_model=schemas.PersonOut)
def get_person(person_id: str, actor_id: str = Depends(auth.get_current_actor),
               db: Session = Depends(get_db)):
    return people.get_person(db, person_id)


@app.post("/api/people", response_model=schemas.PersonOut)
def add_person(body: schemas.PersonCreate, actor_id: str = Depends(auth.get_current_actor),
               db: Session = Depends(get_db)):
    return people.create_person(db, body.name, body.gender, actor_id=actor_id,
                                father_id=body.father_id, mother_id=body.mother_id,
                                details=body.details)


@app.patch("/api/people/{person_id}", response_model=schemas.PersonOut)
def update_person(person_id: str, body: schemas.MutationRequest,
                  actor_id: str = Depends(auth.get_current_actor), db: Session = Depends(get_db)):
    return guard.apply_mutation(db, actor_id, person_id, body.expected_version, body.changes)


@app.delete("/api/people/{person_id}", response_model=schemas.PersonOut)
def delete_person(person_id: str, expected_version: int,
                  actor_id: str = Depends(auth.get_current_actor), db: Session = Depends(get_db)):
    return guard.delete_person(db, actor_id, person_id, expected_version)


@app.post("/api/people/{person_id}/children", response_model=list[schemas.PersonOut])
def add_children(person_id: str, body: schemas.BulkChildrenRequest,
                 actor_id: str = Depends(auth.get_current_actor), db: Session = Depends(get_db)):
    children = [{**c.details, "name": c.name, "gender": c.gender} for c in body.children]
    return people.bulk_create_children(db, actor_id, person_id, children)


@app.get("/api/people/{person_id}/permission", response_model=schemas.PermissionOut)
def get_permission(person_id: str, actor_id: str = Depends(auth.get_current_actor),
                   db: Session = Depends(get_db)):
    level = permissions.evaluate(db, actor_id, person_id)
    return {"actor_id": actor_id, "target_id": person_id, "level": level.value}


@app.get("/api/people/{person_id}/descendants")
def get_descendants(person_id: str, actor_id: str = Depends(auth.get_current_actor),
                    db: Session = Depends(get_db)):
    people.get_person(db, person_id)
    return {"root_id": person_id, "descendants": sorted(relations.all_descendants(db, person_id))}


@app.get("/api/people/{person_id}/structure")
def get_structure(person_id: str, actor_id: str = Depends(auth.get_current_actor),
                  db: Session = Depends(get_db)):
    people.get_person(db, person_id)
    return relations.build_structure(db, person_id)


@app.get("/api/structure")
def get_full_structure(actor_id: str = Depends(auth.get_current_actor),
                       db: Session = Depends(get_db)):
    return relations.build_structure(db)


@app.get("/api/people/{person_id}/summary")
def get_summary(person_id: str, actor_id: str = Depends(auth.get_current_actor),
                db: Session = Depends(get_db)):
    if actor_id != person_id and not permissions.is_admin(db, actor_id):
        raise Unauthorized()
    return permissions.permission_summary(db, person_id)


@app.get("/api/people/{person_id}/marriages", response_model=list[schemas.MarriageOut])
def get_marriages(person_id: str, actor_id: str = Depends(auth.get_current_actor),
                  db: Session = Depends(get_db)):
    return people.list_marriages(db, person_id)


@app.put("/api/people/{person_id}/role", response_model=schemas.PersonOut)
def put_role(person_id: str, body: schemas.RoleRequest,
             actor_id: str = Depends(auth.get_current_actor), db: Session = Depends(get_db)):
    return permissions.set_role(db, actor_id, person_id, Role(body.role))


# ── Marriages ──

@app.post("/api/marriages", response_model=schemas.MarriageOut)
def add_marriage(body: schemas.MarriageCreate, actor_id: str = Depends(auth.get_current_actor),
                 db: Session = Depends(get_db)):
    return people.create_marriage(db, actor_id, body.husband_id, body.wife_id, body.status,
                                  body.start_date, body.end_date)


@app.post("/api/marriages/{marriage_id}/end", response_model=schemas.MarriageOut)
def finish_marriage(marriage_id: str, body: schemas.MarriageEnd,
                    actor_id: str = Depends(auth.get_current_actor), db: Session = Depends(get_db)):
    return people.end_marriage(db, actor_id, marriage_id, body.end_date)


@app.delete("/api/marriages/{marriage_id}")
def remove_marriage(marriage_id: str, actor_id: str = Depends(auth.get_current_actor),
                    db: Session = Depends(get_db)):
    people.delete_marriage(db, actor_id, marriage_id)
    return {"ok": True}


# ── Suggestions ──

@app.post("/api/suggestions", response_model=schemas.SuggestionOut)
def add_suggestion(body: schemas.SuggestionCreate, actor_id: str = Depends(auth.get_current_actor),
                   db: Session = Depends(get_db)):
    return suggestions.propose(db, actor_id, body.target_id, body.field, body.value, body.reason)


@app.get("/api/suggestions/pending", response_model=list[schemas.SuggestionOut])
def pending_suggestions(limit: int = 50, offset: int = 0,
                        actor_id: str = Depends(auth.get_current_actor),
                        db: Session = Depends(get_db)):
    return suggestions.list_pending_for_reviewer(db, actor_id, limit, offset)


@app.get("/api/suggestions/mine", response_model=list[schemas.SuggestionOut])
def my_suggestions(actor_id: str = Depends(auth.get_current_actor), db: Session = Depends(get_db)):
    return suggestions.list_by_proposer(db, actor_id)


@app.post("/api/suggestions/{suggestion_id}/approve", response_model=schemas.SuggestionOut)
def approve_suggestion(suggestion_id: str, actor_id: str = Depends(auth.get_current_actor),
                       db: Session = Depends(get_db)):
    return suggestions.approve(db, actor_id, suggestion_id)


@app.post("/api/suggestions/{suggestion_id}/reject", response_model=schemas.SuggestionOut)
def reject_suggestion(suggestion_id: str, body: schemas.ReviewRequest,
                      actor_id: str = Depends(auth.get_current_actor),
                      db: Session = Depends(get_db)):
    return suggestions.reject(db, actor_id, suggestion_id, body.reason)


@app.post("/api/suggestions/{suggestion_id}/cancel", response_model=schemas.SuggestionOut)
def cancel_suggestion(suggestion_id: str, actor_id: str = Depends(auth.get_current_actor),
                      db: Session = Depends(get_db)):
    return suggestions.cancel(db, actor_id, suggestion_id)


# ── Audit ──

@app.get("/api/audit", response_model=list[schemas.AuditEntryOut])
def audit_log(record_id: str | None = None, limit: int = 50, offset: int = 0,
              actor_id: str = Depends(auth.get_current_actor), db: Session = Depends(get_db)):
    if record_id is None and not permissions.is_admin(db, actor_id):
        raise Unauthorized("Admin access required")
    return changelog.list_entries(db, record_id=record_id, limit=limit, offset=offset)


@app.get("/api/audit/{entry_id}", response_model=schemas.AuditEntryOut)
def audit_entry(entry_id: str, actor_id: str = Depends(auth.get_current_actor),
                db: Session = Depends(get_db)):
    entry = changelog.get_entry(db, entry_id)
    if entry is None:
        raise NotFound("Audit entry not found")
    return entry


@app.post("/api/audit/{entry_id}/revert", response_model=schemas.PersonOut)
def revert_audit(entry_id: str, body: schemas.RevertRequest,
                 actor_id: str = Depends(auth.get_current_actor), db: Session = Depends(get_db)):
    return revert.revert_entry(db, entry_id, actor_id, body.reason)


# ── Administration ──

@app.post("/api/moderators")
def add_moderator(body: schemas.ModeratorGrantRequest,
                  actor_id: str = Depends(auth.get_current_actor), db: Session = Depends(get_db)):
    grant_id = permissions.grant_branch_moderator(db, actor_id, body.user_id, body.root_id,
                                                  body.notes)
    return {"grant_id": grant_id}


@app.delete("/api/moderators")
def remove_moderator(user_id: str, root_id: str, actor_id: str = Depends(auth.get_current_actor),
                     db: Session = Depends(get_db)):
    grant_id = permissions.revoke_branch_moderator(db, actor_id, user_id, root_id)
    return {"grant_id": grant_id}


@app.post("/api/blocks")
def add_block(body: schemas.BlockRequest, actor_id: str = Depends(auth.get_current_actor),
              db: Session = Depends(get_db)):
    block_id = permissions.block_from_suggesting(db, actor_id, body.person_id, body.reason)
    return {"block_id": block_id}


@app.delete("/api/blocks/{person_id}")
def remove_block(person_id: str, actor_id: str = Depends(auth.get_current_actor),
                 db: Session = Depends(get_db)):
    return {"lifted": permissions.unblock_from_suggesting(db, actor_id, person_id)}


@app.get("/api/admin/integrity/cycles")
def integrity_cycles(actor_id: str = Depends(auth.get_current_actor),
                     db: Session = Depends(get_db)):
    if not permissions.is_admin(db, actor_id):
        raise Unauthorized("Admin access required")
    relations.check_parent_integrity(db)
    return {"cycles": []}
