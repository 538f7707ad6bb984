"""
Access layer: password hashing, JWT bearer tokens and the single
capability check every protected route goes through.

Roles map to capability sets in ``CAPABILITIES``; a route declares the
capability it needs with ``@requires("loans:write")`` and reads the caller
from ``g.identity``. The ledger never sees roles, only the identity's
username for attribution.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import wraps

import jwt
from flask import current_app, g, request
from sqlalchemy import select
from werkzeug.security import check_password_hash, generate_password_hash

from .db import unit_of_work
from .errors import AuthError, ForbiddenError
from .models import Librarian, Member, iso, utcnow

logger = logging.getLogger(__name__)

STAFF_CAPABILITIES = frozenset(
    {
        "catalog:write",
        "members:read",
        "members:write",
        "loans:read",
        "loans:write",
        "fines:read",
        "fines:write",
        "reports:read",
    }
)

CAPABILITIES = {
    "ADMIN": STAFF_CAPABILITIES | {"staff:admin"},
    "LIBRARIAN": STAFF_CAPABILITIES,
    "MEMBER": frozenset(),
}


@dataclass(frozen=True)
class Identity:
    user_id: int
    username: str
    role: str

    @property
    def is_staff(self):
        return self.role in ("ADMIN", "LIBRARIAN")

    def can(self, capability):
        return capability in CAPABILITIES.get(self.role, frozenset())


def hash_password(password):
    return generate_password_hash(password)


def verify_password(password_hash, password):
    return check_password_hash(password_hash, password)


# ----------------- tokens -----------------

def issue_token(identity, secret, algorithm="HS256", exp_minutes=1440, now=None):
    now = now or utcnow()
    payload = {
        "sub": str(identity.user_id),
        "username": identity.username,
        "role": identity.role,
        "iat": now,
        "exp": now + timedelta(minutes=exp_minutes),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_token(token, secret, algorithm="HS256"):
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
        return Identity(
            user_id=int(payload["sub"]),
            username=payload["username"],
            role=payload["role"],
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except (jwt.InvalidTokenError, KeyError, ValueError):
        raise AuthError("Invalid token")


# ----------------- accounts -----------------

def _librarian_identity(librarian):
    return Identity(librarian.id, librarian.username, librarian.role)


def _member_identity(member):
    return Identity(member.id, member.email, "MEMBER")


def authenticate_librarian(store, username, password):
    with unit_of_work(store) as session:
        librarian = (
            session.execute(
                select(Librarian).where(
                    (Librarian.username == username) & (Librarian.status == "ACTIVE")
                )
            )
            .scalar_one_or_none()
        )
        if librarian is None or not verify_password(librarian.password_hash, password):
            logger.warning("Failed librarian login for %s", username)
            raise AuthError("Invalid credentials")
        return _librarian_identity(librarian), {
            "id": librarian.id,
            "username": librarian.username,
            "name": librarian.full_name,
            "email": librarian.email,
            "role": librarian.role,
        }


def authenticate_member(store, email, password):
    with unit_of_work(store) as session:
        member = (
            session.execute(
                select(Member).where((Member.email == email) & (Member.status == "ACTIVE"))
            )
            .scalar_one_or_none()
        )
        if member is None or not verify_password(member.password_hash, password):
            logger.warning("Failed member login for %s", email)
            raise AuthError("Invalid credentials")
        return _member_identity(member), {
            "id": member.id,
            "name": member.full_name,
            "email": member.email,
            "membershipType": member.membership_type,
            "joinDate": iso(member.joined_at),
        }


def _load_account(session, identity):
    model = Member if identity.role == "MEMBER" else Librarian
    return session.get(model, identity.user_id)


def ensure_active(store, identity):
    """The token may outlive the account; re-check it still exists and is ACTIVE."""
    with unit_of_work(store) as session:
        account = _load_account(session, identity)
        if account is None:
            raise AuthError("User not found")
        if account.status != "ACTIVE":
            raise AuthError("Account is inactive")


def account_profile(store, identity):
    with unit_of_work(store) as session:
        account = _load_account(session, identity)
        if account is None:
            raise AuthError("User not found")
        if identity.role == "MEMBER":
            return {
                "id": account.id,
                "name": account.full_name,
                "email": account.email,
                "phone": account.phone,
                "address": account.address,
                "membershipType": account.membership_type,
                "joinDate": iso(account.joined_at),
                "status": account.status,
                "role": "MEMBER",
            }
        return {
            "id": account.id,
            "username": account.username,
            "name": account.full_name,
            "email": account.email,
            "role": account.role,
            "status": account.status,
        }


# ----------------- request gate -----------------

def bearer_token():
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def requires(capability=None):
    """
    Authenticate the bearer token and, if given, check ``capability``.
    ``capability=None`` only requires a valid, active account.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            token = bearer_token()
            if token is None:
                raise AuthError("Access token required")

            cfg = current_app.config
            identity = decode_token(token, cfg["JWT_SECRET"], cfg["JWT_ALGORITHM"])
            ensure_active(current_app.extensions["library_store"], identity)

            if capability is not None and not identity.can(capability):
                logger.warning(
                    "%s (%s) denied %s on %s",
                    identity.username,
                    identity.role,
                    capability,
                    request.path,
                )
                raise ForbiddenError(f"{capability} access required")

            g.identity = identity
            return func(*args, **kwargs)

        return wrapper

    return decorator


def ensure_self_or_staff(identity, member_id, capability="members:read"):
    """Members may only touch their own records; staff need ``capability``."""
    if identity.role == "MEMBER":
        if identity.user_id != member_id:
            raise ForbiddenError("Access denied")
        return
    if not identity.can(capability):
        raise ForbiddenError("Access denied")
