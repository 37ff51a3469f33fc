from datetime import datetime, timedelta

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from famledger.stores import MemoryStore
from famledger.webapp.application import app, install_state
from famledger.webapp.config import AUTH_COOKIE_NAME


@pytest.fixture()
def client(db):
    install_state(app, session_store=MemoryStore(), rate_limit_store=MemoryStore())
    return TestClient(app)


def _register(client, username="alice", email="alice@example.com", password="hunter22") -> str:
    response = client.post(
        "/_actions/users.create", data={"username": username, "email": email, "password": password}
    )
    body = response.json()
    assert body["ok"], body
    assert AUTH_COOKIE_NAME in response.cookies
    return body["csrf_token"]


def _with_family(client) -> str:
    token = _register(client)
    response = client.post("/_actions/families.create", data={"name": "Smith"}, headers={"x-csrf-token": token})
    assert response.json()["ok"]
    return token


def test_health_reports_local_database(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True, "dbMode": "local"}
    assert client.post("/_actions/health.get").json()["dbMode"] == "local"


def test_protected_pages_redirect_to_login(client) -> None:
    response = client.get("/dashboard", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/login?redirectTo=/dashboard"
    login = client.get("/login")
    assert login.status_code == 200
    assert "Sign in" in login.text


def test_signed_in_users_skip_the_login_page(client) -> None:
    _register(client)
    response = client.get("/login?redirectTo=/dashboard", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/dashboard"
    offsite = client.get("/login?redirectTo=//evil.example", follow_redirects=False)
    assert offsite.headers["location"] == "/dashboard"


def test_mutations_need_a_session(client) -> None:
    response = client.post("/_actions/accounts.create", data={"name": "Cash", "account_type": "Cash"})
    assert response.status_code == 401
    assert response.json() == {"ok": False, "error": "Authentication required"}

    client.cookies.set(AUTH_COOKIE_NAME, "not-a-session")
    response = client.post("/_actions/accounts.create", data={"name": "Cash", "account_type": "Cash"})
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid session"


def test_mutations_need_a_csrf_token(client) -> None:
    token = _register(client)
    missing = client.post("/_actions/families.create", data={"name": "Smith"})
    assert missing.status_code == 403
    assert missing.json()["error"] == "Security validation failed. Please refresh the page and try again."
    wrong = client.post("/_actions/families.create", data={"name": "Smith", "_csrf_token": "0" * 64})
    assert wrong.status_code == 403

    ok = client.post("/_actions/families.create", data={"name": "Smith", "_csrf_token": token})
    assert ok.json()["ok"]
    assert ok.json()["family"]["name"] == "Smith"


def test_account_actions_round_trip(client) -> None:
    token = _with_family(client)
    created = client.post(
        "/_actions/accounts.create",
        data={"name": "Checking", "account_type": "Checking", "balance": "150", "_csrf_token": token},
    ).json()
    assert created["ok"]
    assert created["account"]["balance"] == "150.00"

    duplicate = client.post(
        "/_actions/accounts.create",
        data={"name": "checking", "account_type": "Checking", "_csrf_token": token},
    )
    assert duplicate.status_code == 200
    assert duplicate.json() == {"ok": False, "error": "An account with this name already exists"}

    listing = client.post("/_actions/accounts.list").json()
    assert [item["name"] for item in listing["accounts"]] == ["Checking"]

    bulk = client.post("/_actions/accounts.bulk_purge", data={"ids": "abc", "_csrf_token": token}).json()
    assert bulk == {"ok": False, "error": "No valid ids provided"}

    page = client.get("/dashboard")
    assert page.status_code == 200
    assert "Checking" in page.text
    assert "$150.00" in page.text


def test_actions_without_family_explain_why(client) -> None:
    _register(client)
    response = client.post("/_actions/accounts.list")
    assert response.json() == {"ok": False, "error": "User must belong to a family"}


def test_recurring_generation_action(client) -> None:
    token = _with_family(client)
    account = client.post(
        "/_actions/accounts.create",
        data={"name": "Checking", "account_type": "Checking", "_csrf_token": token},
    ).json()["account"]
    start = (datetime.now() - timedelta(days=2)).strftime("%Y-%m-%dT%H:%M")
    rule = client.post(
        "/_actions/recurring.create",
        data={
            "account_id": account["id"],
            "amount": "4.50",
            "type": "Expense",
            "frequency": "Daily",
            "description": "Coffee",
            "time_of_day": start[-5:],
            "start_date": start,
            "tags": "daily",
            "_csrf_token": token,
        },
    ).json()
    assert rule["ok"], rule
    rule_id = rule["recurring_transaction"]["id"]

    result = client.post(
        "/_actions/recurring.generate",
        data={"ids": f"{rule_id}, 9999", "generate_up_to": "today", "_csrf_token": token},
    ).json()
    assert result == {"ok": True, "generatedCount": 3, "errors": ["Recurring transaction 9999 not found"]}

    again = client.post("/_actions/recurring.generate", data={"ids": str(rule_id), "_csrf_token": token}).json()
    assert again == {"ok": True, "generatedCount": 0, "errors": None}

    listing = client.post("/_actions/transactions.list", data={"limit": "10"}).json()
    assert listing["pagination"]["total"] == 3
    assert {item["name"] for item in listing["transactions"]} == {"Coffee (Recurring)"}
    balance = client.post("/_actions/accounts.get", data={"id": account["id"]}).json()["account"]["balance"]
    assert balance == "-13.50"


def test_login_logout_and_rate_limit(client) -> None:
    _register(client)
    client.cookies.clear()

    failed = client.post("/_actions/users.login", data={"email": "alice@example.com", "password": "nope-nope"})
    assert failed.json() == {"ok": False, "error": "Invalid email or password"}

    logged_in = client.post(
        "/_actions/users.login", data={"email": "alice@example.com", "password": "hunter22", "remember": "true"}
    )
    assert logged_in.json()["ok"]
    token = logged_in.json()["csrf_token"]
    assert client.post("/_actions/users.get").json()["user"]["username"] == "alice"

    logout = client.post("/_actions/users.logout", data={"_csrf_token": token})
    assert logout.json() == {"ok": True}
    client.cookies.clear()
    assert client.post("/_actions/users.get").status_code == 401

    for _ in range(5):
        client.post("/_actions/users.login", data={"email": "alice@example.com", "password": "wrong-one"})
    blocked = client.post("/_actions/users.login", data={"email": "alice@example.com", "password": "hunter22"})
    assert blocked.status_code == 429
    assert "too many failed login attempts" in blocked.json()["error"]


def test_dashboard_generate_form(client) -> None:
    token = _with_family(client)
    response = client.post(
        "/dashboard/generate", data={"ids": "12345", "_csrf_token": token}, follow_redirects=False
    )
    assert response.status_code == 302
    page = client.get("/dashboard")
    assert "Generated 0 transaction(s)." in page.text
    assert "Recurring transaction 12345 not found" in page.text
