import os
import re
import logging
from datetime import datetime, timezone

from flask import Blueprint, Flask, current_app, g, jsonify, request, send_from_directory
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from . import auth, catalog, ledger, membership, reports
from .config import Config
from .db import make_store
from .errors import LibraryError, ValidationError
from .filters import parse_pagination
from .models import iso, utcnow

# ---------------------------------------------------------
# Logging
# ---------------------------------------------------------
logging.basicConfig(
    level=Config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
FRONTEND_DIR = os.path.join(BASE_DIR, "frontend")

api = Blueprint("api", __name__, url_prefix="/api")
frontend = Blueprint("frontend", __name__)


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

def _store():
    return current_app.extensions["library_store"]


def _snake(key):
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _body():
    """JSON object body with camelCase keys folded to snake_case."""
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return {_snake(k): v for k, v in data.items()}


def _required_int(data, key, label):
    value = data.get(key)
    if value in (None, ""):
        raise ValidationError(f"{label} is required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be an integer")


def _due_date(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("dueDate must be an ISO date or datetime")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _page():
    cfg = current_app.config
    return parse_pagination(request.args, cfg["DEFAULT_PAGE_SIZE"], cfg["MAX_PAGE_SIZE"])


def _ok(data=None, status=200, **extra):
    payload = {"success": True}
    if data is not None:
        payload["data"] = data
    payload.update(extra)
    return jsonify(payload), status


def _rate():
    return current_app.config["FINE_PER_DAY"]


# ---------------------------------------------------------
# Health
# ---------------------------------------------------------

@api.get("/health")
def health_check():
    return jsonify({"status": "ok", "service": "library_service"}), 200


# ---------------------------------------------------------
# Auth
# ---------------------------------------------------------

def _login_response(identity, user):
    cfg = current_app.config
    token = auth.issue_token(
        identity,
        cfg["JWT_SECRET"],
        cfg["JWT_ALGORITHM"],
        cfg["JWT_EXP_MINUTES"],
    )
    logger.info("Login %s (%s)", identity.username, identity.role)
    return _ok(message="Login successful", token=token, user=user)


@api.post("/auth/admin-login")
def admin_login():
    data = _body()
    if not data.get("username") or not data.get("password"):
        raise ValidationError("Username and password are required")
    identity, user = auth.authenticate_librarian(_store(), data["username"], data["password"])
    return _login_response(identity, user)


@api.post("/auth/member-login")
def member_login():
    data = _body()
    if not data.get("email") or not data.get("password"):
        raise ValidationError("Email and password are required")
    identity, user = auth.authenticate_member(_store(), data["email"], data["password"])
    return _login_response(identity, user)


@api.post("/auth/member-register")
def member_register():
    member = membership.register_member(_store(), _body())
    return _ok(
        message="Member registered successfully",
        memberId=member["member_id"],
        status=201,
    )


@api.get("/auth/me")
@auth.requires()
def me():
    return _ok(user=auth.account_profile(_store(), g.identity))


@api.post("/auth/logout")
def logout():
    # tokens are stateless; the client drops its copy
    return _ok(message="Logged out successfully")


# ---------------------------------------------------------
# Books
# ---------------------------------------------------------

@api.get("/books")
def list_books():
    page, limit = _page()
    rows, pagination = catalog.list_books(
        _store(), catalog.book_filters(request.args), page, limit
    )
    return _ok(rows, pagination=pagination)


@api.get("/books/<int:book_id>")
def get_book(book_id):
    return _ok(catalog.get_book(_store(), book_id))


@api.get("/books/categories")
def list_categories():
    return _ok(catalog.list_categories(_store()))


@api.get("/books/authors")
def list_authors():
    return _ok(catalog.list_authors(_store()))


@api.post("/books")
@auth.requires("catalog:write")
def create_book():
    book = catalog.create_book(_store(), _body())
    return _ok({"bookId": book["book_id"]}, status=201, message="Book created successfully")


@api.put("/books/<int:book_id>")
@auth.requires("catalog:write")
def update_book(book_id):
    book = catalog.update_book(_store(), book_id, _body())
    return _ok(book, message="Book updated successfully")


@api.delete("/books/<int:book_id>")
@auth.requires("catalog:write")
def delete_book(book_id):
    catalog.delete_book(_store(), book_id)
    return _ok(message="Book deleted successfully")


# ---------------------------------------------------------
# Members
# ---------------------------------------------------------

@api.get("/members")
@auth.requires("members:read")
def list_members():
    page, limit = _page()
    rows, pagination = membership.list_members(
        _store(), membership.member_filters(request.args), page, limit
    )
    return _ok(rows, pagination=pagination)


@api.post("/members")
@auth.requires("members:write")
def create_member():
    member = membership.register_member(_store(), _body())
    return _ok(
        {"memberId": member["member_id"]},
        status=201,
        message="Member created successfully",
    )


@api.get("/members/<int:member_id>")
@auth.requires()
def get_member(member_id):
    auth.ensure_self_or_staff(g.identity, member_id, "members:read")
    return _ok(membership.get_member(_store(), member_id))


@api.put("/members/<int:member_id>")
@auth.requires()
def update_member(member_id):
    auth.ensure_self_or_staff(g.identity, member_id, "members:write")
    member = membership.update_member(
        _store(), member_id, _body(), allow_status=g.identity.is_staff
    )
    return _ok(member, message="Member updated successfully")


@api.delete("/members/<int:member_id>")
@auth.requires("members:write")
def delete_member(member_id):
    membership.deactivate_member(_store(), member_id)
    return _ok(message="Member deleted successfully")


@api.get("/members/<int:member_id>/loans")
@api.get("/members/<int:member_id>/borrowed-books")
@auth.requires()
def member_loans(member_id):
    auth.ensure_self_or_staff(g.identity, member_id, "loans:read")
    return _ok(ledger.member_loans(_store(), member_id, rate=_rate()))


@api.get("/members/<int:member_id>/fines")
@auth.requires()
def member_fines(member_id):
    auth.ensure_self_or_staff(g.identity, member_id, "fines:read")
    return _ok(ledger.member_fines(_store(), member_id))


# ---------------------------------------------------------
# Transactions (issue / return)
# ---------------------------------------------------------

@api.post("/transactions/issue")
@auth.requires("loans:write")
def issue_book():
    data = _body()
    member_id = _required_int(data, "member_id", "Member ID")
    book_id = _required_int(data, "book_id", "Book ID")

    loan = ledger.issue_loan(
        _store(),
        member_id,
        book_id,
        g.identity.username,
        due_at=_due_date(data.get("due_date")),
        loan_days=current_app.config["LOAN_PERIOD_DAYS"],
    )
    return _ok(
        {"transactionId": loan.id, "dueDate": loan.due_at.isoformat()},
        status=201,
        message="Book issued successfully",
    )


@api.post("/transactions/return")
@auth.requires("loans:write")
def return_book():
    data = _body()
    loan_id = _required_int(data, "transaction_id", "Transaction ID")

    result = ledger.return_loan(
        _store(), loan_id, g.identity.username, fine_per_day=_rate()
    )
    return _ok(
        {
            "transactionId": result.loan_id,
            "fineAmount": ledger.money(result.fine_amount),
            "wasOverdue": result.was_overdue,
            "fineId": result.fine_id,
        },
        message="Book returned successfully",
    )


@api.get("/transactions")
@auth.requires("loans:read")
def list_transactions():
    page, limit = _page()
    now = utcnow()
    rows, pagination = ledger.list_loans(
        _store(),
        ledger.loan_filters(request.args, now),
        page,
        limit,
        now=now,
        rate=_rate(),
    )
    return _ok(rows, pagination=pagination)


@api.get("/transactions/overdue")
@auth.requires("loans:read")
def overdue_transactions():
    return _ok(ledger.overdue_loans(_store(), rate=_rate()))


@api.get("/transactions/<int:loan_id>")
@auth.requires()
def get_transaction(loan_id):
    loan = ledger.get_loan(_store(), loan_id, rate=_rate())
    auth.ensure_self_or_staff(g.identity, loan["member_id"], "loans:read")
    return _ok(loan)


# ---------------------------------------------------------
# Admin: dashboard, fines, librarians
# ---------------------------------------------------------

@api.get("/admin/dashboard")
@auth.requires("reports:read")
def admin_dashboard():
    return _ok(reports.dashboard(_store()))


@api.get("/admin/fines")
@auth.requires("fines:read")
def admin_list_fines():
    page, limit = _page()
    rows, pagination = ledger.list_fines(
        _store(), ledger.fine_filters(request.args), page, limit
    )
    return _ok(rows, pagination=pagination)


@api.put("/admin/fines/<int:fine_id>")
@auth.requires("fines:write")
def admin_update_fine(fine_id):
    status = _body().get("status")
    fine = ledger.set_fine_status(_store(), fine_id, status)
    return _ok(
        {"fineId": fine.id, "status": fine.status, "paidDate": iso(fine.paid_at)},
        message=f"Fine marked as {fine.status.lower()} successfully",
    )


@api.get("/admin/librarians")
@auth.requires("staff:admin")
def admin_list_librarians():
    page, limit = _page()
    rows, pagination = membership.list_librarians(
        _store(), membership.librarian_filters(request.args), page, limit
    )
    return _ok(rows, pagination=pagination)


@api.post("/admin/librarians")
@auth.requires("staff:admin")
def admin_create_librarian():
    librarian = membership.create_librarian(_store(), _body())
    return _ok(
        {"librarianId": librarian["librarian_id"]},
        status=201,
        message="Librarian created successfully",
    )


@api.put("/admin/librarians/<int:librarian_id>")
@auth.requires("staff:admin")
def admin_update_librarian(librarian_id):
    librarian = membership.update_librarian(_store(), librarian_id, _body())
    return _ok(librarian, message="Librarian updated successfully")


@api.delete("/admin/librarians/<int:librarian_id>")
@auth.requires("staff:admin")
def admin_delete_librarian(librarian_id):
    membership.delete_librarian(_store(), librarian_id, g.identity.user_id)
    return _ok(message="Librarian deleted successfully")


# ---------------------------------------------------------
# Frontend serving
# ---------------------------------------------------------

@frontend.route("/")
def index():
    return send_from_directory(FRONTEND_DIR, "index.html")


@frontend.route("/<path:path>")
def static_files(path):
    return send_from_directory(FRONTEND_DIR, path)


# ---------------------------------------------------------
# App factory
# ---------------------------------------------------------

def _register_error_handlers(app):
    @app.errorhandler(LibraryError)
    def handle_library_error(exc):
        return jsonify({"success": False, "code": exc.code, "message": exc.message}), exc.status

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        code = (exc.name or "error").upper().replace(" ", "_")
        return jsonify({"success": False, "code": code, "message": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        logger.exception("Unhandled error on %s", request.path)
        return jsonify({"success": False, "code": "INTERNAL", "message": "Something went wrong"}), 500


def create_app(config=None):
    """
    Build the Flask app. ``config`` is a mapping of overrides applied on top
    of ``Config`` (tests point SQLALCHEMY_DATABASE_URI at a temp file).
    """
    app = Flask(__name__, static_folder=None)
    app.config.from_object(Config)
    if config:
        app.config.from_mapping(config)

    CORS(app)

    store = make_store(
        app.config["SQLALCHEMY_DATABASE_URI"],
        echo=app.config["SQLALCHEMY_ECHO"],
    )
    app.extensions["library_store"] = store

    membership.ensure_default_admin(
        store,
        app.config["DEFAULT_ADMIN_USERNAME"],
        app.config["DEFAULT_ADMIN_PASSWORD"],
        app.config["DEFAULT_ADMIN_EMAIL"],
    )

    app.register_blueprint(api)
    app.register_blueprint(frontend)
    _register_error_handlers(app)

    logger.info("Library service ready on %s", app.config["SQLALCHEMY_DATABASE_URI"])
    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=os.getenv("FLASK_DEBUG") == "1")
