"""Identity: accounts linked to people, password hashing, session tokens and FastAPI dependencies."""
import hashlib
import hmac
import logging
import os
import time

import bcrypt as _bcrypt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from . import people, permissions
from .db import get_db, transaction
from .errors import Unauthorized
from .models import Account, Person

logger = logging.getLogger(__name__)

COOKIE_SECRET = os.environ.get("COOKIE_SECRET", "")
SETUP_TOKEN = os.environ.get("SETUP_TOKEN", "")
SESSION_MAX_AGE = int(os.environ.get("SESSION_MAX_AGE", str(30 * 24 * 3600)))
SESSION_COOKIE = "session"


# ── Password hashing ──

def validate_password(password: str):
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(password.encode("utf-8")) > 72:
        raise ValueError("Password is too long (max 72 bytes)")


def hash_password(password: str) -> str:
    validate_password(password)
    return _bcrypt.hashpw(password.encode("utf-8"), _bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return _bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# ── Session tokens ──

def _sign(payload: str) -> str:
    return hmac.new(COOKIE_SECRET.encode(), payload.encode(), hashlib.sha256).hexdigest()


def create_session_token(account_id: str) -> str:
    """HMAC-signed token: account_id:timestamp:signature."""
    payload = f"{account_id}:{int(time.time())}"
    return f"{payload}:{_sign(payload)}"


def verify_session_token(token: str | None) -> str | None:
    """Return the account id of a valid, unexpired token."""
    if not token or not COOKIE_SECRET:
        return None
    parts = token.split(":")
    if len(parts) != 3:
        return None
    account_id, ts, sig = parts
    if not hmac.compare_digest(sig, _sign(f"{account_id}:{ts}")):
        return None
    try:
        issued = int(ts)
    except ValueError:
        return None
    if time.time() - issued > SESSION_MAX_AGE:
        return None
    return account_id


# ── Accounts ──

def create_account(db: Session, email: str, password: str, person_id: str) -> Account:
    email = email.strip().lower()
    if get_account_by_email(db, email):
        raise ValueError("An account with this email already exists")
    person = people.get_person(db, person_id)
    if db.query(Account.id).filter(Account.person_id == person.id).first():
        raise ValueError("This person already has an account")
    with transaction(db):
        account = Account(email=email, password_hash=hash_password(password), person_id=person.id)
        db.add(account)
    logger.info("Account %s created for person %s", account.id, person.id)
    return account


def get_account_by_email(db: Session, email: str) -> Account | None:
    return db.query(Account).filter(Account.email == email.strip().lower()).first()


def get_account(db: Session, account_id: str) -> Account | None:
    return db.get(Account, account_id)


def count_accounts(db: Session) -> int:
    return db.query(Account).count()


def authenticate(db: Session, email: str, password: str) -> Account | None:
    account = get_account_by_email(db, email)
    if account is None or not verify_password(password, account.password_hash):
        return None
    return account


def setup_first_account(db: Session, token: str, email: str, password: str, name: str,
                        gender: str) -> Account:
    """Create the first person and account and make them super admin."""
    if not SETUP_TOKEN or not hmac.compare_digest(token or "", SETUP_TOKEN):
        raise Unauthorized("Invalid setup token")
    if count_accounts(db) > 0:
        raise Unauthorized("Setup already completed")
    validate_password(password)
    person = people.create_person(db, name, gender)
    account = create_account(db, email, password, person.id)
    permissions.bootstrap_super_admin(db, person.id)
    return account


# ── FastAPI dependencies ──

def _actor_from_request(request: Request, db: Session) -> str | None:
    account_id = verify_session_token(request.cookies.get(SESSION_COOKIE))
    if not account_id:
        return None
    account = get_account(db, account_id)
    if account is None:
        return None
    person = db.get(Person, account.person_id)
    if person is None or person.deleted_at is not None:
        return None
    return person.id


def get_current_actor(request: Request, db: Session = Depends(get_db)) -> str:
    """Person id of the signed-in account. 401 if there is none."""
    actor_id = _actor_from_request(request, db)
    if actor_id is None:
        raise HTTPException(401, "Not authenticated")
    return actor_id
