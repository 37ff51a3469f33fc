"""FastAPI frontend for the famledger family finance tracker.

Every user-facing operation is exposed as ``POST /_actions/<group>.<name>``
taking form fields and answering ``{"ok": true, ...}`` or
``{"ok": false, "error": "..."}``. A handful of HTML pages (login, register,
dashboard) sit on top for browser use. Sessions live in the injected
:class:`~famledger.security.SessionManager`; the signed cookie session from
Starlette only carries one-shot notices between redirects.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from html import escape as html_escape
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote

from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from starlette.middleware.sessions import SessionMiddleware

from ..exceptions import AuthenticationRequiredError, CsrfValidationError, FamLedgerError
from ..models import Actor, BulkResult, Page
from ..money import format_currency, from_cents
from ..ops import HealthMonitor
from ..security import (
    RateLimiter,
    SessionManager,
    SessionRecord,
    client_ip,
    csrf_tokens_match,
    extract_csrf_token,
    request_fingerprint,
)
from ..stores import JsonFileStore, TTLStore
from . import accounts, categories, families, recurring, transactions, users
from . import tags as tag_handlers
from . import persistence as _persistence
from .config import (
    AUTH_COOKIE_NAME,
    CSRF_FORM_FIELD,
    CSRF_HEADER_NAMES,
    ENFORCE_FINGERPRINT,
    LOGIN_ATTEMPT_WINDOW,
    LOGIN_BLOCK_DURATION,
    LOGIN_MAX_ATTEMPTS,
    LONG_SESSION_LIFETIME,
    LONG_SESSION_MAX_AGE,
    PUBLIC_PATHS,
    RATE_LIMIT_FILE,
    SESSION_SECRET,
    SESSIONS_FILE,
    SHORT_SESSION_LIFETIME,
    SHORT_SESSION_MAX_AGE,
)
from .context import resolve_actor
from .events import event_log
from .forms import parse_bool, parse_id, parse_id_list, parse_optional_int
from .persistence import create_db_and_tables, open_session, serialize

# Mutating actions; every POST to one of these needs a session and a CSRF token.
CSRF_PROTECTED_ACTIONS = frozenset(
    {
        "users.logout",
        "users.update",
        "users.change_password",
        "families.create",
        "families.join",
        "families.leave",
        "families.leave_and_delete",
        "families.update_role",
        "families.remove_user",
        "accounts.create",
        "accounts.update",
        "accounts.delete",
        "accounts.restore",
        "accounts.purge",
        "accounts.bulk_restore",
        "accounts.bulk_purge",
        "accounts.recalculate",
        "categories.create",
        "categories.update",
        "categories.delete",
        "categories.restore",
        "categories.purge",
        "categories.bulk_restore",
        "categories.bulk_purge",
        "tags.create",
        "tags.update",
        "tags.delete",
        "tags.restore",
        "tags.bulk_restore",
        "tags.bulk_purge",
        "transactions.create",
        "transactions.update",
        "transactions.delete",
        "recurring.create",
        "recurring.update",
        "recurring.delete",
        "recurring.generate",
    }
)
CSRF_PROTECTED_PAGES = frozenset(
    {"/logout", "/dashboard/generate", "/dashboard/family/create", "/dashboard/family/join"}
)


# ---------------------------------------------------------------------------
# FastAPI application setup
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(_: FastAPI):
    create_db_and_tables()
    yield


app = FastAPI(title="Family Ledger", lifespan=lifespan)
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    same_site="lax",
    max_age=None,
)


def install_state(
    target: FastAPI,
    *,
    session_store: Optional[TTLStore] = None,
    rate_limit_store: Optional[TTLStore] = None,
) -> None:
    """Attach the session manager, rate limiter and logger to ``target.state``."""

    target.state.sessions = SessionManager(
        session_store if session_store is not None else JsonFileStore(SESSIONS_FILE),
        short_lifetime=SHORT_SESSION_LIFETIME,
        long_lifetime=LONG_SESSION_LIFETIME,
    )
    target.state.rate_limiter = RateLimiter(
        rate_limit_store if rate_limit_store is not None else JsonFileStore(RATE_LIMIT_FILE),
        max_attempts=LOGIN_MAX_ATTEMPTS,
        block_duration=LOGIN_BLOCK_DURATION,
        attempt_window=LOGIN_ATTEMPT_WINDOW,
    )
    target.state.logger = event_log


install_state(app)


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
def sessions_for(request: Request) -> SessionManager:
    return request.app.state.sessions


def rate_limiter_for(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def fingerprint_for(request: Request) -> str:
    peer = request.client.host if request.client else None
    return request_fingerprint(request.headers, peer)


def ip_for(request: Request) -> str:
    peer = request.client.host if request.client else None
    return client_ip(request.headers, peer)


def current_session(request: Request) -> Optional[SessionRecord]:
    return getattr(request.state, "user", None)


def is_https(request: Request) -> bool:
    forwarded = request.headers.get("x-forwarded-proto", "")
    return request.url.scheme == "https" or forwarded.split(",")[0].strip() == "https"


def set_auth_cookie(request: Request, response: Response, record: SessionRecord) -> None:
    secure = is_https(request)
    response.set_cookie(
        AUTH_COOKIE_NAME,
        record.id,
        max_age=LONG_SESSION_MAX_AGE if record.long_term else SHORT_SESSION_MAX_AGE,
        httponly=True,
        secure=secure,
        samesite="strict" if secure else "lax",
        path="/",
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(AUTH_COOKIE_NAME, path="/")


def safe_redirect_target(target: Optional[str], fallback: str = "/dashboard") -> str:
    candidate = (target or "").strip()
    if candidate.startswith("/") and not candidate.startswith("//"):
        return candidate
    return fallback


def set_notice(request: Request, message: str, kind: str = "info") -> None:
    request.session["notice"] = message
    request.session["notice_kind"] = kind


def pop_notice(request: Request) -> Tuple[Optional[str], str]:
    message = request.session.pop("notice", None)
    kind = request.session.pop("notice_kind", "info")
    return message, kind


def action_ok(**payload: Any) -> JSONResponse:
    return JSONResponse({"ok": True, **payload})


def action_error(message: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


def run_action(
    request: Request,
    action: str,
    handler: Callable[[Session, Actor], Dict[str, Any]],
    *,
    failure: str,
) -> JSONResponse:
    """Resolve the caller, run ``handler`` and turn errors into action responses."""

    logger = request.app.state.logger
    record = current_session(request)
    try:
        if record is None:
            raise AuthenticationRequiredError()
        with open_session() as db:
            actor = resolve_actor(db, record.user_id)
            payload = handler(db, actor)
    except FamLedgerError as exc:
        return action_error(str(exc), exc.status_code)
    except Exception as exc:
        logger.error("action_failed", exc=exc, action=action)
        return action_error(failure, 500)
    return action_ok(**payload)


def bulk_payload(result: BulkResult, verb: str) -> Dict[str, Any]:
    return result.as_payload(verb)


def page_payload(key: str, page: Page) -> Dict[str, Any]:
    return {key: page.items, "pagination": page.pagination()}


# ---------------------------------------------------------------------------
# Middleware: session resolution, CSRF and page guards
# ---------------------------------------------------------------------------
def _is_public(path: str) -> bool:
    return path in PUBLIC_PATHS


def _csrf_protected(request: Request) -> bool:
    if request.method != "POST":
        return False
    path = request.url.path
    if path.startswith("/_actions/"):
        return path[len("/_actions/"):] in CSRF_PROTECTED_ACTIONS
    return path in CSRF_PROTECTED_PAGES


@app.middleware("http")
async def session_guard(request: Request, call_next):
    sessions = sessions_for(request)
    cookie = request.cookies.get(AUTH_COOKIE_NAME)
    record = sessions.validate(cookie, fingerprint=fingerprint_for(request) if ENFORCE_FINGERPRINT else None)
    request.state.user = record
    path = request.url.path

    if _csrf_protected(request):
        if not cookie:
            return action_error("Authentication required", 401)
        if record is None:
            return action_error("Invalid session", 401)
        await request.body()
        form = await request.form()
        token = extract_csrf_token(form, request.headers, field_name=CSRF_FORM_FIELD, header_names=CSRF_HEADER_NAMES)
        if not csrf_tokens_match(record.csrf_token, token):
            request.app.state.logger.log("csrf_rejected", level="warning", path=path, user_id=record.user_id)
            return action_error(str(CsrfValidationError()), 403)

    if request.method == "GET" and not path.startswith("/_actions/"):
        if path in ("/", "/login") and record is not None:
            return RedirectResponse(safe_redirect_target(request.query_params.get("redirectTo")), status_code=302)
        if not _is_public(path) and record is None:
            if cookie:
                response = RedirectResponse(f"/login?redirectTo={quote(path)}", status_code=302)
                clear_auth_cookie(response)
                return response
            return RedirectResponse(f"/login?redirectTo={quote(path)}", status_code=302)

    return await call_next(request)


# ---------------------------------------------------------------------------
# Page rendering
# ---------------------------------------------------------------------------
def base_styles() -> str:
    return """
    <style>
      body{font-family:system-ui,-apple-system,'Segoe UI',Roboto,sans-serif;margin:0;background:#f8fafc;color:#0f172a;}
      main{max-width:960px;margin:0 auto;padding:24px 16px;}
      .card{background:#fff;border:1px solid #e2e8f0;border-radius:12px;padding:16px;margin-bottom:16px;}
      table{width:100%;border-collapse:collapse;}
      th,td{padding:8px;border-bottom:1px solid #e2e8f0;text-align:left;font-size:14px;}
      .notice{padding:10px 12px;border-radius:8px;margin-bottom:12px;background:#e0f2fe;}
      .notice.error{background:#fee2e2;}
      .swatch{display:inline-block;width:10px;height:10px;border-radius:999px;margin-right:6px;}
      form.inline{display:flex;gap:8px;align-items:center;flex-wrap:wrap;}
      label{display:block;margin:8px 0 4px;font-size:14px;}
      input,select,button{font:inherit;padding:6px 10px;}
    </style>
    """


def frame(title: str, inner: str, head_extra: str = "") -> str:
    return (
        "<html><head><meta charset='utf-8'><meta name='viewport' "
        f"content='width=device-width,initial-scale=1'>{head_extra}<title>{html_escape(title)}</title>"
        f"{base_styles()}</head><body><main>{inner}</main></body></html>"
    )


def render_page(request: Optional[Request], title: str, inner: str, *, status_code: int = 200) -> HTMLResponse:
    head_extra = ""
    record = current_session(request) if request is not None else None
    if record is not None:
        head_extra = f"<meta name='csrf-token' content='{html_escape(record.csrf_token)}'>"
    notice_html = ""
    if request is not None:
        message, kind = pop_notice(request)
        if message:
            notice_html = f"<div class='notice {html_escape(kind)}'>{html_escape(message)}</div>"
    return HTMLResponse(frame(title, notice_html + inner, head_extra=head_extra), status_code=status_code)


def csrf_input(request: Request) -> str:
    record = current_session(request)
    token = record.csrf_token if record else ""
    return f"<input type='hidden' name='{CSRF_FORM_FIELD}' value='{html_escape(token)}'>"


def _login_form(redirect_to: str) -> str:
    return f"""
    <div class='card'>
      <h1>Sign in</h1>
      <form method='post' action='/login'>
        <input type='hidden' name='redirect_to' value='{html_escape(redirect_to)}'>
        <label>Email</label><input type='email' name='email' required>
        <label>Password</label><input type='password' name='password' required>
        <label><input type='checkbox' name='remember' value='true'> Keep me signed in for 30 days</label>
        <p><button type='submit'>Sign in</button></p>
      </form>
      <p>No account yet? <a href='/register'>Create one</a>.</p>
    </div>
    """


@app.get("/", response_class=HTMLResponse)
@app.get("/login", response_class=HTMLResponse)
def login_page(request: Request, redirectTo: str = "/dashboard"):
    return render_page(request, "Sign in", _login_form(safe_redirect_target(redirectTo)))


@app.post("/login")
def login_submit(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    remember: str = Form(""),
    redirect_to: str = Form("/dashboard"),
):
    try:
        with open_session() as db:
            _, record = users.login_user(
                db,
                sessions_for(request),
                rate_limiter_for(request),
                email=email,
                password=password,
                remember=parse_bool(remember),
                ip=ip_for(request),
                fingerprint=fingerprint_for(request),
            )
    except FamLedgerError as exc:
        set_notice(request, str(exc), "error")
        return RedirectResponse(f"/login?redirectTo={quote(safe_redirect_target(redirect_to))}", status_code=302)
    response = RedirectResponse(safe_redirect_target(redirect_to), status_code=302)
    set_auth_cookie(request, response, record)
    return response


@app.get("/register", response_class=HTMLResponse)
def register_page(request: Request):
    inner = """
    <div class='card'>
      <h1>Create an account</h1>
      <form method='post' action='/register'>
        <label>Username</label><input name='username' minlength='4' required>
        <label>Email</label><input type='email' name='email' required>
        <label>Password</label><input type='password' name='password' minlength='6' required>
        <p><button type='submit'>Create account</button></p>
      </form>
      <p>Already registered? <a href='/login'>Sign in</a>.</p>
    </div>
    """
    return render_page(request, "Register", inner)


@app.post("/register")
def register_submit(
    request: Request,
    username: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
):
    try:
        with open_session() as db:
            _, record = users.register_user(
                db,
                sessions_for(request),
                username=username,
                email=email,
                password=password,
                fingerprint=fingerprint_for(request),
            )
    except FamLedgerError as exc:
        set_notice(request, str(exc), "error")
        return RedirectResponse("/register", status_code=302)
    response = RedirectResponse("/dashboard", status_code=302)
    set_auth_cookie(request, response, record)
    return response


@app.post("/logout")
def logout_submit(request: Request):
    record = current_session(request)
    users.logout_user(sessions_for(request), record.id if record else None)
    response = RedirectResponse("/login", status_code=302)
    clear_auth_cookie(response)
    return response


def _family_setup_html(request: Request) -> str:
    with open_session() as db:
        options = "".join(
            f"<option value='{family['id']}'>{html_escape(family['name'])} ({family['user_count']})</option>"
            for family in families.get_families(db)
        )
    join_form = ""
    if options:
        join_form = f"""
        <form class='inline' method='post' action='/dashboard/family/join'>
          {csrf_input(request)}<select name='family_id'>{options}</select><button type='submit'>Join family</button>
        </form>
        """
    return f"""
    <div class='card'>
      <h2>Set up your family</h2>
      <form class='inline' method='post' action='/dashboard/family/create'>
        {csrf_input(request)}<input name='name' placeholder='Family name' required><button type='submit'>Create family</button>
      </form>
      {join_form}
    </div>
    """


@app.post("/dashboard/family/create")
def dashboard_family_create(request: Request, name: str = Form("")):
    record = current_session(request)
    try:
        with open_session() as db:
            actor = resolve_actor(db, record.user_id if record else None)
            family = families.create_family(db, actor, name=name)
    except FamLedgerError as exc:
        set_notice(request, str(exc), "error")
        return RedirectResponse("/dashboard", status_code=302)
    set_notice(request, f"Family '{family.name}' created.")
    return RedirectResponse("/dashboard", status_code=302)


@app.post("/dashboard/family/join")
def dashboard_family_join(request: Request, family_id: str = Form("")):
    record = current_session(request)
    try:
        with open_session() as db:
            actor = resolve_actor(db, record.user_id if record else None)
            family = families.join_family(db, actor, family_id)
    except FamLedgerError as exc:
        set_notice(request, str(exc), "error")
        return RedirectResponse("/dashboard", status_code=302)
    set_notice(request, f"Joined family '{family.name}'.")
    return RedirectResponse("/dashboard", status_code=302)


@app.get("/dashboard", response_class=HTMLResponse)
def dashboard(request: Request):
    record = current_session(request)
    with open_session() as db:
        try:
            actor = resolve_actor(db, record.user_id if record else None)
        except AuthenticationRequiredError:
            response = RedirectResponse("/login?redirectTo=/dashboard", status_code=302)
            clear_auth_cookie(response)
            return response
        header = f"""
        <div class='card'>
          <h1>Hello, {html_escape(actor.username)}</h1>
          <form method='post' action='/logout'>{csrf_input(request)}<button type='submit'>Sign out</button></form>
        </div>
        """
        if actor.family_id is None:
            return render_page(request, "Dashboard", header + _family_setup_html(request))
        account_rows = "".join(
            "<tr>"
            f"<td><span class='swatch' style='background:{html_escape(account.color)}'></span>{html_escape(account.name)}</td>"
            f"<td>{html_escape(account.account_type)}</td>"
            f"<td>{format_currency(from_cents(account.balance_cents))}</td>"
            "</tr>"
            for account in accounts.get_accounts(db, actor)
        ) or "<tr><td colspan='3'>No accounts yet.</td></tr>"
        rules = recurring.get_recurring_transactions(db, actor, limit=50).items
    rule_rows = "".join(
        "<tr>"
        f"<td><input type='checkbox' name='ids' value='{rule['id']}'></td>"
        f"<td>{html_escape(rule['description'])}</td>"
        f"<td>{html_escape(rule['frequency'])}</td>"
        f"<td>{html_escape(rule['amount'])}</td>"
        f"<td>{html_escape(rule['status'])}</td>"
        f"<td>{rule['occurrences_count']}</td>"
        "</tr>"
        for rule in rules
    ) or "<tr><td colspan='6'>No recurring transactions yet.</td></tr>"
    inner = f"""
    {header}
    <div class='card'>
      <h2>Accounts</h2>
      <table><thead><tr><th>Name</th><th>Type</th><th>Balance</th></tr></thead><tbody>{account_rows}</tbody></table>
    </div>
    <div class='card'>
      <h2>Recurring transactions</h2>
      <form method='post' action='/dashboard/generate'>
        {csrf_input(request)}
        <table><thead><tr><th></th><th>Description</th><th>Frequency</th><th>Amount</th><th>Status</th><th>Runs</th></tr></thead>
        <tbody>{rule_rows}</tbody></table>
        <p class='inline'>
          <select name='generate_up_to'>
            <option value='today'>Up to today</option>
            <option value='nextWeek'>Up to next week</option>
            <option value='nextMonth'>Up to next month</option>
          </select>
          <button type='submit'>Generate transactions</button>
        </p>
      </form>
    </div>
    """
    return render_page(request, "Dashboard", inner)


@app.post("/dashboard/generate")
async def dashboard_generate(request: Request):
    form = await request.form()
    record = current_session(request)
    try:
        rule_ids = parse_id_list(form.getlist("ids"), limit=None)
        with open_session() as db:
            actor = resolve_actor(db, record.user_id if record else None)
            result = recurring.generate_recurring_transactions(
                db,
                actor,
                rule_ids,
                str(form.get("generate_up_to") or "today"),
                logger=request.app.state.logger,
            )
    except FamLedgerError as exc:
        set_notice(request, str(exc), "error")
        return RedirectResponse("/dashboard", status_code=302)
    message = f"Generated {result.generated_count} transaction(s)."
    if result.errors:
        set_notice(request, message + " " + " ".join(result.errors), "error")
    else:
        set_notice(request, message)
    return RedirectResponse("/dashboard", status_code=302)


@app.get("/health")
@app.post("/_actions/health.get")
def health():
    monitor = HealthMonitor(str(_persistence.engine.url))
    try:
        with open_session() as db:
            db.exec(select(1)).first()
    except SQLAlchemyError as exc:
        monitor.database_online = False
        event_log.error("health_check_failed", exc=exc)
    return JSONResponse(monitor.status(), status_code=200 if monitor.database_online else 503)


# ---------------------------------------------------------------------------
# User actions
# ---------------------------------------------------------------------------
@app.post("/_actions/users.create")
def action_users_create(
    request: Request,
    username: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
):
    try:
        with open_session() as db:
            user, record = users.register_user(
                db,
                sessions_for(request),
                username=username,
                email=email,
                password=password,
                fingerprint=fingerprint_for(request),
            )
            payload = serialize(user)
    except FamLedgerError as exc:
        return action_error(str(exc), exc.status_code)
    response = action_ok(user=payload, csrf_token=record.csrf_token)
    set_auth_cookie(request, response, record)
    return response


@app.post("/_actions/users.login")
def action_users_login(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    remember: str = Form(""),
):
    try:
        with open_session() as db:
            user, record = users.login_user(
                db,
                sessions_for(request),
                rate_limiter_for(request),
                email=email,
                password=password,
                remember=parse_bool(remember),
                ip=ip_for(request),
                fingerprint=fingerprint_for(request),
            )
            payload = serialize(user)
    except FamLedgerError as exc:
        return action_error(str(exc), exc.status_code)
    response = action_ok(user=payload, csrf_token=record.csrf_token)
    set_auth_cookie(request, response, record)
    return response


@app.post("/_actions/users.logout")
def action_users_logout(request: Request):
    record = current_session(request)
    users.logout_user(sessions_for(request), record.id if record else None)
    response = action_ok()
    clear_auth_cookie(response)
    return response


@app.post("/_actions/users.get")
def action_users_get(request: Request):
    return run_action(
        request,
        "users.get",
        lambda db, actor: {"user": users.get_user(db, actor)},
        failure="Failed to load user",
    )


@app.post("/_actions/users.update")
def action_users_update(request: Request, username: str = Form(""), email: str = Form("")):
    record = current_session(request)
    return run_action(
        request,
        "users.update",
        lambda db, actor: {
            "user": serialize(
                users.update_profile(
                    db, sessions_for(request), actor, record.id if record else None, username=username, email=email
                )
            )
        },
        failure="Failed to update profile",
    )


@app.post("/_actions/users.change_password")
def action_users_change_password(
    request: Request,
    current_password: str = Form(""),
    new_password: str = Form(""),
):
    record = current_session(request)
    return run_action(
        request,
        "users.change_password",
        lambda db, actor: {
            "destroyed_sessions": users.change_password(
                db,
                sessions_for(request),
                actor,
                record.id if record else None,
                current_password=current_password,
                new_password=new_password,
            )
        },
        failure="Failed to change password",
    )


# ---------------------------------------------------------------------------
# Family actions
# ---------------------------------------------------------------------------
@app.post("/_actions/families.create")
def action_families_create(request: Request, name: str = Form("")):
    return run_action(
        request,
        "families.create",
        lambda db, actor: {"family": serialize(families.create_family(db, actor, name=name))},
        failure="Failed to create family",
    )


@app.post("/_actions/families.join")
def action_families_join(request: Request, family_id: str = Form("")):
    return run_action(
        request,
        "families.join",
        lambda db, actor: {"family": serialize(families.join_family(db, actor, family_id))},
        failure="Failed to join family",
    )


@app.post("/_actions/families.leave")
def action_families_leave(request: Request):
    def handler(db: Session, actor: Actor) -> Dict[str, Any]:
        families.leave_family(db, actor)
        return {}

    return run_action(request, "families.leave", handler, failure="Failed to leave family")


@app.post("/_actions/families.leave_and_delete")
def action_families_leave_and_delete(request: Request):
    def handler(db: Session, actor: Actor) -> Dict[str, Any]:
        families.leave_and_delete_family(db, actor)
        return {}

    return run_action(request, "families.leave_and_delete", handler, failure="Failed to delete family")


@app.post("/_actions/families.list")
def action_families_list(request: Request):
    return run_action(
        request,
        "families.list",
        lambda db, actor: {"families": families.get_families(db)},
        failure="Failed to load families",
    )


@app.post("/_actions/families.details")
def action_families_details(request: Request):
    return run_action(
        request,
        "families.details",
        lambda db, actor: {"family": families.get_family_details(db, actor)},
        failure="Failed to load family details",
    )


@app.post("/_actions/families.update_role")
def action_families_update_role(request: Request, user_id: str = Form(""), role: str = Form("")):
    return run_action(
        request,
        "families.update_role",
        lambda db, actor: {"user": serialize(families.update_user_role(db, actor, user_id, role))},
        failure="Failed to update user role",
    )


@app.post("/_actions/families.remove_user")
def action_families_remove_user(request: Request, user_id: str = Form("")):
    return run_action(
        request,
        "families.remove_user",
        lambda db, actor: {"user": serialize(families.remove_user_from_family(db, actor, user_id))},
        failure="Failed to remove user from family",
    )


# ---------------------------------------------------------------------------
# Account actions
# ---------------------------------------------------------------------------
@app.post("/_actions/accounts.create")
def action_accounts_create(
    request: Request,
    name: str = Form(""),
    account_type: str = Form(""),
    balance: str = Form("0"),
    color: Optional[str] = Form(None),
):
    return run_action(
        request,
        "accounts.create",
        lambda db, actor: {
            "account": serialize(
                accounts.create_account(db, actor, name=name, account_type=account_type, balance=balance, color=color)
            )
        },
        failure="Failed to create account",
    )


@app.post("/_actions/accounts.list")
def action_accounts_list(request: Request, include_deleted: str = Form("")):
    return run_action(
        request,
        "accounts.list",
        lambda db, actor: {
            "accounts": [
                serialize(account)
                for account in accounts.get_accounts(db, actor, include_deleted=parse_bool(include_deleted))
            ]
        },
        failure="Failed to load accounts",
    )


@app.post("/_actions/accounts.get")
def action_accounts_get(request: Request, id: str = Form("")):
    return run_action(
        request,
        "accounts.get",
        lambda db, actor: accounts.get_account(db, actor, parse_id(id, "Account")),
        failure="Failed to load account",
    )


@app.post("/_actions/accounts.history")
def action_accounts_history(request: Request, id: str = Form(""), days: str = Form("30")):
    return run_action(
        request,
        "accounts.history",
        lambda db, actor: {
            "balances": [
                serialize(item)
                for item in accounts.get_account_balance_history(
                    db, actor, parse_id(id, "Account"), days=parse_optional_int(days, "Days", minimum=1) or 30
                )
            ]
        },
        failure="Failed to load balance history",
    )


@app.post("/_actions/accounts.update")
def action_accounts_update(
    request: Request,
    id: str = Form(""),
    name: str = Form(""),
    account_type: str = Form(""),
    color: Optional[str] = Form(None),
):
    return run_action(
        request,
        "accounts.update",
        lambda db, actor: {
            "account": serialize(
                accounts.update_account(
                    db, actor, parse_id(id, "Account"), name=name, account_type=account_type, color=color
                )
            )
        },
        failure="Failed to update account",
    )


@app.post("/_actions/accounts.delete")
def action_accounts_delete(request: Request, id: str = Form("")):
    return run_action(
        request,
        "accounts.delete",
        lambda db, actor: {"account": serialize(accounts.delete_account(db, actor, parse_id(id, "Account")))},
        failure="Failed to delete account",
    )


@app.post("/_actions/accounts.restore")
def action_accounts_restore(request: Request, id: str = Form("")):
    return run_action(
        request,
        "accounts.restore",
        lambda db, actor: {"account": serialize(accounts.restore_account(db, actor, parse_id(id, "Account")))},
        failure="Failed to restore account",
    )


@app.post("/_actions/accounts.purge")
def action_accounts_purge(request: Request, id: str = Form("")):
    def handler(db: Session, actor: Actor) -> Dict[str, Any]:
        accounts.purge_account(db, actor, parse_id(id, "Account"))
        return {}

    return run_action(request, "accounts.purge", handler, failure="Failed to purge account")


@app.post("/_actions/accounts.bulk_restore")
def action_accounts_bulk_restore(request: Request, ids: str = Form("")):
    return run_action(
        request,
        "accounts.bulk_restore",
        lambda db, actor: bulk_payload(accounts.bulk_restore_accounts(db, actor, ids), "restored"),
        failure="Failed to restore accounts",
    )


@app.post("/_actions/accounts.bulk_purge")
def action_accounts_bulk_purge(request: Request, ids: str = Form("")):
    return run_action(
        request,
        "accounts.bulk_purge",
        lambda db, actor: bulk_payload(accounts.bulk_purge_accounts(db, actor, ids), "purged"),
        failure="Failed to purge accounts",
    )


@app.post("/_actions/accounts.recalculate")
def action_accounts_recalculate(request: Request, id: str = Form("")):
    return run_action(
        request,
        "accounts.recalculate",
        lambda db, actor: {
            "account": serialize(accounts.recalculate_account_balance(db, actor, parse_id(id, "Account")))
        },
        failure="Failed to recalculate account balance",
    )


# ---------------------------------------------------------------------------
# Category actions
# ---------------------------------------------------------------------------
@app.post("/_actions/categories.create")
def action_categories_create(
    request: Request,
    name: str = Form(""),
    color: Optional[str] = Form(None),
    parent_id: Optional[str] = Form(None),
):
    return run_action(
        request,
        "categories.create",
        lambda db, actor: {
            "category": serialize(categories.create_category(db, actor, name=name, color=color, parent_id=parent_id))
        },
        failure="Failed to create category",
    )


@app.post("/_actions/categories.list")
def action_categories_list(request: Request, include_deleted: str = Form("")):
    return run_action(
        request,
        "categories.list",
        lambda db, actor: {
            "categories": categories.get_categories(db, actor, include_deleted=parse_bool(include_deleted))
        },
        failure="Failed to load categories",
    )


@app.post("/_actions/categories.get")
def action_categories_get(request: Request, id: str = Form("")):
    return run_action(
        request,
        "categories.get",
        lambda db, actor: {"category": categories.get_category(db, actor, parse_id(id, "Category"))},
        failure="Failed to load category",
    )


@app.post("/_actions/categories.update")
def action_categories_update(
    request: Request,
    id: str = Form(""),
    name: str = Form(""),
    color: Optional[str] = Form(None),
    parent_id: Optional[str] = Form(None),
):
    return run_action(
        request,
        "categories.update",
        lambda db, actor: {
            "category": serialize(
                categories.update_category(
                    db, actor, parse_id(id, "Category"), name=name, color=color, parent_id=parent_id
                )
            )
        },
        failure="Failed to update category",
    )


@app.post("/_actions/categories.delete")
def action_categories_delete(request: Request, id: str = Form("")):
    return run_action(
        request,
        "categories.delete",
        lambda db, actor: {"category": serialize(categories.delete_category(db, actor, parse_id(id, "Category")))},
        failure="Failed to delete category",
    )


@app.post("/_actions/categories.restore")
def action_categories_restore(request: Request, id: str = Form("")):
    return run_action(
        request,
        "categories.restore",
        lambda db, actor: {"category": serialize(categories.restore_category(db, actor, parse_id(id, "Category")))},
        failure="Failed to restore category",
    )


@app.post("/_actions/categories.purge")
def action_categories_purge(request: Request, id: str = Form("")):
    def handler(db: Session, actor: Actor) -> Dict[str, Any]:
        categories.purge_category(db, actor, parse_id(id, "Category"))
        return {}

    return run_action(request, "categories.purge", handler, failure="Failed to purge category")


@app.post("/_actions/categories.bulk_restore")
def action_categories_bulk_restore(request: Request, ids: str = Form("")):
    return run_action(
        request,
        "categories.bulk_restore",
        lambda db, actor: bulk_payload(categories.bulk_restore_categories(db, actor, ids), "restored"),
        failure="Failed to restore categories",
    )


@app.post("/_actions/categories.bulk_purge")
def action_categories_bulk_purge(request: Request, ids: str = Form("")):
    return run_action(
        request,
        "categories.bulk_purge",
        lambda db, actor: bulk_payload(categories.bulk_purge_categories(db, actor, ids), "purged"),
        failure="Failed to purge categories",
    )


# ---------------------------------------------------------------------------
# Tag actions
# ---------------------------------------------------------------------------
@app.post("/_actions/tags.create")
def action_tags_create(request: Request, name: str = Form(""), color: Optional[str] = Form(None)):
    return run_action(
        request,
        "tags.create",
        lambda db, actor: {"tag": serialize(tag_handlers.create_tag(db, actor, name=name, color=color))},
        failure="Failed to create tag",
    )


@app.post("/_actions/tags.list")
def action_tags_list(request: Request, include_deleted: str = Form("")):
    return run_action(
        request,
        "tags.list",
        lambda db, actor: {
            "tags": tag_handlers.get_tags(db, actor, include_deleted=parse_bool(include_deleted))
        },
        failure="Failed to load tags",
    )


@app.post("/_actions/tags.get")
def action_tags_get(request: Request, id: str = Form("")):
    return run_action(
        request,
        "tags.get",
        lambda db, actor: {"tag": tag_handlers.get_tag(db, actor, parse_id(id, "Tag"))},
        failure="Failed to load tag",
    )


@app.post("/_actions/tags.update")
def action_tags_update(
    request: Request, id: str = Form(""), name: str = Form(""), color: Optional[str] = Form(None)
):
    return run_action(
        request,
        "tags.update",
        lambda db, actor: {
            "tag": serialize(tag_handlers.update_tag(db, actor, parse_id(id, "Tag"), name=name, color=color))
        },
        failure="Failed to update tag",
    )


@app.post("/_actions/tags.delete")
def action_tags_delete(request: Request, id: str = Form("")):
    return run_action(
        request,
        "tags.delete",
        lambda db, actor: {"tag": serialize(tag_handlers.delete_tag(db, actor, parse_id(id, "Tag")))},
        failure="Failed to delete tag",
    )


@app.post("/_actions/tags.restore")
def action_tags_restore(request: Request, id: str = Form("")):
    return run_action(
        request,
        "tags.restore",
        lambda db, actor: {"tag": serialize(tag_handlers.restore_tag(db, actor, parse_id(id, "Tag")))},
        failure="Failed to restore tag",
    )


@app.post("/_actions/tags.bulk_restore")
def action_tags_bulk_restore(request: Request, ids: str = Form("")):
    return run_action(
        request,
        "tags.bulk_restore",
        lambda db, actor: bulk_payload(tag_handlers.bulk_restore_tags(db, actor, ids), "restored"),
        failure="Failed to restore tags",
    )


@app.post("/_actions/tags.bulk_purge")
def action_tags_bulk_purge(request: Request, ids: str = Form("")):
    return run_action(
        request,
        "tags.bulk_purge",
        lambda db, actor: bulk_payload(tag_handlers.bulk_purge_tags(db, actor, ids), "purged"),
        failure="Failed to purge tags",
    )


# ---------------------------------------------------------------------------
# Transaction actions
# ---------------------------------------------------------------------------
@app.post("/_actions/transactions.create")
def action_transactions_create(
    request: Request,
    account_id: str = Form(""),
    amount: str = Form(""),
    type: str = Form(""),
    name: str = Form(""),
    date: str = Form(""),
    category_id: Optional[str] = Form(None),
    new_category: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
):
    return run_action(
        request,
        "transactions.create",
        lambda db, actor: {
            "transaction": transactions.transaction_payload(
                db,
                transactions.create_transaction(
                    db,
                    actor,
                    account_id=account_id,
                    amount=amount,
                    transaction_type=type,
                    name=name,
                    date=date,
                    category_id=category_id,
                    new_category=new_category,
                    tags=tags,
                ),
            )
        },
        failure="Failed to create transaction",
    )


@app.post("/_actions/transactions.list")
def action_transactions_list(
    request: Request,
    page: str = Form("1"),
    limit: str = Form("20"),
    account_id: Optional[str] = Form(None),
    category_id: Optional[str] = Form(None),
    type: Optional[str] = Form(None),
    start_date: Optional[str] = Form(None),
    end_date: Optional[str] = Form(None),
):
    return run_action(
        request,
        "transactions.list",
        lambda db, actor: page_payload(
            "transactions",
            transactions.get_transactions(
                db,
                actor,
                page=parse_optional_int(page, "Page", minimum=1) or 1,
                limit=parse_optional_int(limit, "Limit", minimum=1) or 20,
                account_id=parse_optional_int(account_id, "Account"),
                category_id=parse_optional_int(category_id, "Category"),
                transaction_type=type,
                start_date=start_date,
                end_date=end_date,
            ),
        ),
        failure="Failed to load transactions",
    )


@app.post("/_actions/transactions.get")
def action_transactions_get(request: Request, id: str = Form("")):
    return run_action(
        request,
        "transactions.get",
        lambda db, actor: {"transaction": transactions.get_transaction(db, actor, parse_id(id, "Transaction"))},
        failure="Failed to load transaction",
    )


@app.post("/_actions/transactions.update")
def action_transactions_update(
    request: Request,
    id: str = Form(""),
    account_id: str = Form(""),
    amount: str = Form(""),
    type: str = Form(""),
    name: str = Form(""),
    date: str = Form(""),
    category_id: Optional[str] = Form(None),
    new_category: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
):
    return run_action(
        request,
        "transactions.update",
        lambda db, actor: {
            "transaction": transactions.transaction_payload(
                db,
                transactions.update_transaction(
                    db,
                    actor,
                    parse_id(id, "Transaction"),
                    account_id=account_id,
                    amount=amount,
                    transaction_type=type,
                    name=name,
                    date=date,
                    category_id=category_id,
                    new_category=new_category,
                    tags=tags,
                ),
            )
        },
        failure="Failed to update transaction",
    )


@app.post("/_actions/transactions.delete")
def action_transactions_delete(request: Request, id: str = Form("")):
    return run_action(
        request,
        "transactions.delete",
        lambda db, actor: {
            "transaction": serialize(transactions.delete_transaction(db, actor, parse_id(id, "Transaction")))
        },
        failure="Failed to delete transaction",
    )


# ---------------------------------------------------------------------------
# Recurring transaction actions
# ---------------------------------------------------------------------------
def _rule_form_kwargs(
    account_id: str,
    amount: str,
    type: str,
    frequency: str,
    description: str,
    time_of_day: str,
    start_date: str,
    day_of_week: Optional[str],
    day_of_month: Optional[str],
    end_condition: str,
    end_date: Optional[str],
    max_occurrences: Optional[str],
    category_id: Optional[str],
    new_category: Optional[str],
    tags: Optional[str],
) -> Dict[str, Any]:
    return {
        "account_id": account_id,
        "amount": amount,
        "transaction_type": type,
        "frequency": frequency,
        "description": description,
        "time_of_day": time_of_day,
        "start_date": start_date,
        "day_of_week": day_of_week,
        "day_of_month": day_of_month,
        "end_condition": end_condition,
        "end_date": end_date,
        "max_occurrences": max_occurrences,
        "category_id": category_id,
        "new_category": new_category,
        "tags": tags,
    }


@app.post("/_actions/recurring.create")
def action_recurring_create(
    request: Request,
    account_id: str = Form(""),
    amount: str = Form(""),
    type: str = Form(""),
    frequency: str = Form(""),
    description: str = Form(""),
    time_of_day: str = Form(""),
    start_date: str = Form(""),
    day_of_week: Optional[str] = Form(None),
    day_of_month: Optional[str] = Form(None),
    end_condition: str = Form("never"),
    end_date: Optional[str] = Form(None),
    max_occurrences: Optional[str] = Form(None),
    category_id: Optional[str] = Form(None),
    new_category: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
):
    fields = _rule_form_kwargs(
        account_id, amount, type, frequency, description, time_of_day, start_date, day_of_week,
        day_of_month, end_condition, end_date, max_occurrences, category_id, new_category, tags,
    )
    return run_action(
        request,
        "recurring.create",
        lambda db, actor: {
            "recurring_transaction": serialize(recurring.create_recurring_transaction(db, actor, **fields))
        },
        failure="Failed to create recurring transaction",
    )


@app.post("/_actions/recurring.list")
def action_recurring_list(
    request: Request,
    page: str = Form("1"),
    limit: str = Form("20"),
    account_id: Optional[str] = Form(None),
    category_id: Optional[str] = Form(None),
    type: Optional[str] = Form(None),
    frequency: Optional[str] = Form(None),
):
    return run_action(
        request,
        "recurring.list",
        lambda db, actor: page_payload(
            "recurring_transactions",
            recurring.get_recurring_transactions(
                db,
                actor,
                page=parse_optional_int(page, "Page", minimum=1) or 1,
                limit=parse_optional_int(limit, "Limit", minimum=1) or 20,
                account_id=parse_optional_int(account_id, "Account"),
                category_id=parse_optional_int(category_id, "Category"),
                transaction_type=type,
                frequency=frequency,
            ),
        ),
        failure="Failed to load recurring transactions",
    )


@app.post("/_actions/recurring.get")
def action_recurring_get(request: Request, id: str = Form("")):
    return run_action(
        request,
        "recurring.get",
        lambda db, actor: {
            "recurring_transaction": recurring.get_recurring_transaction(
                db, actor, parse_id(id, "Recurring transaction")
            )
        },
        failure="Failed to load recurring transaction",
    )


@app.post("/_actions/recurring.update")
def action_recurring_update(
    request: Request,
    id: str = Form(""),
    account_id: str = Form(""),
    amount: str = Form(""),
    type: str = Form(""),
    frequency: str = Form(""),
    description: str = Form(""),
    time_of_day: str = Form(""),
    start_date: str = Form(""),
    day_of_week: Optional[str] = Form(None),
    day_of_month: Optional[str] = Form(None),
    end_condition: str = Form("never"),
    end_date: Optional[str] = Form(None),
    max_occurrences: Optional[str] = Form(None),
    category_id: Optional[str] = Form(None),
    new_category: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
):
    fields = _rule_form_kwargs(
        account_id, amount, type, frequency, description, time_of_day, start_date, day_of_week,
        day_of_month, end_condition, end_date, max_occurrences, category_id, new_category, tags,
    )
    return run_action(
        request,
        "recurring.update",
        lambda db, actor: {
            "recurring_transaction": serialize(
                recurring.update_recurring_transaction(db, actor, parse_id(id, "Recurring transaction"), **fields)
            )
        },
        failure="Failed to update recurring transaction",
    )


@app.post("/_actions/recurring.delete")
def action_recurring_delete(request: Request, id: str = Form("")):
    return run_action(
        request,
        "recurring.delete",
        lambda db, actor: {
            "recurring_transaction": serialize(
                recurring.delete_recurring_transaction(db, actor, parse_id(id, "Recurring transaction"))
            )
        },
        failure="Failed to delete recurring transaction",
    )


@app.post("/_actions/recurring.generate")
def action_recurring_generate(
    request: Request,
    ids: str = Form(""),
    generate_up_to: str = Form("today"),
):
    return run_action(
        request,
        "recurring.generate",
        lambda db, actor: recurring.generate_recurring_transactions(
            db,
            actor,
            parse_id_list(ids, limit=None),
            generate_up_to or "today",
            logger=request.app.state.logger,
        ).as_payload(),
        failure="Failed to generate recurring transactions",
    )


__all__ = ["app", "install_state", "render_page"]
