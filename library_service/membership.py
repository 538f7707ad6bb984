import logging

from sqlalchemy import func, select

from .auth import hash_password
from .db import unit_of_work
from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .filters import Equals, Search, apply_filters, paginate
from .models import ACCOUNT_STATUSES, LIBRARIAN_ROLES, Librarian, Loan, Member, iso

logger = logging.getLogger(__name__)

MEMBER_FIELDS = ("first_name", "last_name", "email", "phone", "address", "membership_type")
LIBRARIAN_FIELDS = ("username", "first_name", "last_name", "email")


def _loan_counts(session, member_id):
    borrowed = session.execute(
        select(func.count(Loan.id)).where(
            (Loan.member_id == member_id) & (Loan.status == "BORROWED")
        )
    ).scalar_one()
    total = session.execute(
        select(func.count(Loan.id)).where(Loan.member_id == member_id)
    ).scalar_one()
    return borrowed, total


def member_to_dict(member, borrowed=None, total=None):
    data = {
        "member_id": member.id,
        "first_name": member.first_name,
        "last_name": member.last_name,
        "email": member.email,
        "phone": member.phone,
        "address": member.address,
        "membership_type": member.membership_type,
        "join_date": iso(member.joined_at),
        "status": member.status,
    }
    if borrowed is not None:
        data["borrowed_books"] = borrowed
    if total is not None:
        data["total_transactions"] = total
    return data


def librarian_to_dict(librarian):
    return {
        "librarian_id": librarian.id,
        "username": librarian.username,
        "first_name": librarian.first_name,
        "last_name": librarian.last_name,
        "email": librarian.email,
        "role": librarian.role,
        "status": librarian.status,
        "created_date": iso(librarian.created_at),
    }


def _check_status(status):
    if status and status not in ACCOUNT_STATUSES:
        raise ValidationError("status must be ACTIVE or INACTIVE")


# ----------------- members -----------------

def register_member(store, data):
    required = ("first_name", "last_name", "email", "password")
    if not all(data.get(k) for k in required):
        raise ValidationError("First name, last name, email, and password are required")

    with unit_of_work(store) as session:
        exists = session.execute(select(Member.id).where(Member.email == data["email"])).first()
        if exists is not None:
            raise ConflictError("Email already registered")

        member = Member(
            first_name=data["first_name"],
            last_name=data["last_name"],
            email=data["email"],
            phone=data.get("phone"),
            address=data.get("address"),
            membership_type=data.get("membership_type") or "REGULAR",
            password_hash=hash_password(data["password"]),
            status="ACTIVE",
        )
        session.add(member)
        session.flush()
        logger.info("Registered member %s (%s)", member.id, member.email)
        return member_to_dict(member)


def get_member(store, member_id):
    with unit_of_work(store) as session:
        member = session.get(Member, member_id)
        if member is None:
            raise NotFoundError("Member not found")
        borrowed, total = _loan_counts(session, member_id)
        return member_to_dict(member, borrowed, total)


def member_filters(args):
    filters = []
    if args.get("search"):
        filters.append(Search(args["search"], ("first_name", "last_name", "email")))
    if args.get("status"):
        status = args["status"].upper()
        _check_status(status)
        filters.append(Equals("status", status))
    return filters


def list_members(store, filters, page, limit):
    with unit_of_work(store) as session:
        stmt = apply_filters(select(Member), Member, filters)
        stmt = stmt.order_by(Member.joined_at.desc(), Member.id.desc())
        members, pagination = paginate(session, stmt, page, limit)
        rows = []
        for m in members:
            borrowed, _ = _loan_counts(session, m.id)
            rows.append(member_to_dict(m, borrowed=borrowed))
        return rows, pagination


def update_member(store, member_id, data, allow_status=True):
    """
    Partial update. Members editing themselves cannot change their own
    status or membership type (``allow_status=False``).
    """
    status = data.get("status")
    _check_status(status)

    with unit_of_work(store) as session:
        member = session.get(Member, member_id)
        if member is None:
            raise NotFoundError("Member not found")

        if data.get("email"):
            taken = session.execute(
                select(Member.id).where(
                    (Member.email == data["email"]) & (Member.id != member_id)
                )
            ).first()
            if taken is not None:
                raise ConflictError("Email already in use")

        for field in MEMBER_FIELDS:
            if field == "membership_type" and not allow_status:
                continue
            if data.get(field):
                setattr(member, field, data[field])
        if status and allow_status:
            member.status = status

        logger.info("Updated member %s", member_id)
        return member_to_dict(member)


def deactivate_member(store, member_id):
    """Soft delete: the row stays so loans and fines keep their reference."""
    with unit_of_work(store) as session:
        member = session.execute(
            select(Member).where(Member.id == member_id).with_for_update()
        ).scalar_one_or_none()
        if member is None:
            raise NotFoundError("Member not found")

        borrowed, _ = _loan_counts(session, member_id)
        if borrowed > 0:
            raise InvalidStateError("Cannot delete member with active book borrowings")

        member.status = "INACTIVE"
        logger.info("Deactivated member %s", member_id)


# ----------------- librarians -----------------

def _check_role(role):
    if role and role not in LIBRARIAN_ROLES:
        raise ValidationError("role must be ADMIN or LIBRARIAN")


def create_librarian(store, data):
    required = ("username", "first_name", "last_name", "email", "password")
    if not all(data.get(k) for k in required):
        raise ValidationError(
            "Username, first name, last name, email, and password are required"
        )
    _check_role(data.get("role"))

    with unit_of_work(store) as session:
        if session.execute(
            select(Librarian.id).where(Librarian.username == data["username"])
        ).first() is not None:
            raise ConflictError("Username already exists")
        if session.execute(
            select(Librarian.id).where(Librarian.email == data["email"])
        ).first() is not None:
            raise ConflictError("Email already exists")

        librarian = Librarian(
            username=data["username"],
            first_name=data["first_name"],
            last_name=data["last_name"],
            email=data["email"],
            password_hash=hash_password(data["password"]),
            role=data.get("role") or "LIBRARIAN",
            status="ACTIVE",
        )
        session.add(librarian)
        session.flush()
        logger.info("Created librarian %s (%s)", librarian.id, librarian.role)
        return librarian_to_dict(librarian)


def librarian_filters(args):
    filters = []
    if args.get("search"):
        filters.append(
            Search(args["search"], ("username", "first_name", "last_name", "email"))
        )
    if args.get("role"):
        role = args["role"].upper()
        _check_role(role)
        filters.append(Equals("role", role))
    return filters


def list_librarians(store, filters, page, limit):
    with unit_of_work(store) as session:
        stmt = apply_filters(select(Librarian), Librarian, filters)
        stmt = stmt.order_by(Librarian.created_at.desc(), Librarian.id.desc())
        librarians, pagination = paginate(session, stmt, page, limit)
        return [librarian_to_dict(lib) for lib in librarians], pagination


def _other_active_admins(session, librarian_id):
    return session.execute(
        select(func.count(Librarian.id)).where(
            (Librarian.role == "ADMIN")
            & (Librarian.status == "ACTIVE")
            & (Librarian.id != librarian_id)
        )
    ).scalar_one()


def update_librarian(store, librarian_id, data):
    _check_role(data.get("role"))
    _check_status(data.get("status"))

    with unit_of_work(store) as session:
        librarian = session.get(Librarian, librarian_id)
        if librarian is None:
            raise NotFoundError("Librarian not found")

        for column, message in (("username", "Username already in use"), ("email", "Email already in use")):
            value = data.get(column)
            if not value:
                continue
            taken = session.execute(
                select(Librarian.id).where(
                    (getattr(Librarian, column) == value) & (Librarian.id != librarian_id)
                )
            ).first()
            if taken is not None:
                raise ConflictError(message)

        demoted = data.get("role") not in (None, "", "ADMIN")
        deactivated = data.get("status") == "INACTIVE"
        if librarian.role == "ADMIN" and (demoted or deactivated):
            if _other_active_admins(session, librarian_id) == 0:
                raise InvalidStateError("Cannot demote or deactivate the last admin user")

        for field in LIBRARIAN_FIELDS:
            if data.get(field):
                setattr(librarian, field, data[field])
        if data.get("role"):
            librarian.role = data["role"]
        if data.get("status"):
            librarian.status = data["status"]

        logger.info("Updated librarian %s", librarian_id)
        return librarian_to_dict(librarian)


def delete_librarian(store, librarian_id, actor_id):
    if librarian_id == actor_id:
        raise InvalidStateError("Cannot delete your own account")

    with unit_of_work(store) as session:
        librarian = session.get(Librarian, librarian_id)
        if librarian is None:
            raise NotFoundError("Librarian not found")

        if librarian.role == "ADMIN" and _other_active_admins(session, librarian_id) == 0:
            raise InvalidStateError("Cannot delete the last admin user")

        session.delete(librarian)
        logger.info("Deleted librarian %s", librarian_id)


def ensure_default_admin(store, username, password, email):
    """Create the first ADMIN when the librarian table is empty."""
    with unit_of_work(store) as session:
        if session.execute(select(Librarian.id)).first() is not None:
            return False
        session.add(
            Librarian(
                username=username,
                first_name="Library",
                last_name="Administrator",
                email=email,
                password_hash=hash_password(password),
                role="ADMIN",
                status="ACTIVE",
            )
        )
        logger.info("Created default admin account %s", username)
        return True
