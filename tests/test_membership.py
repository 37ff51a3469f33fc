import pytest

from conftest import make_user
from famledger.exceptions import (
    ConflictError,
    FamilyRequiredError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    ValidationError,
)
from famledger.models import Actor, UserRole
from famledger.security import RateLimiter, SessionManager
from famledger.stores import MemoryStore
from famledger.webapp import accounts, families, users
from famledger.webapp.context import resolve_actor
from famledger.webapp.persistence import Account, Family, User


@pytest.fixture()
def sessions() -> SessionManager:
    return SessionManager(MemoryStore())


@pytest.fixture()
def limiter() -> RateLimiter:
    return RateLimiter(MemoryStore())


def _fresh(db, actor: Actor) -> Actor:
    db.expire_all()
    return resolve_actor(db, actor.user_id)


# ---------------------------------------------------------------------------
# Families
# ---------------------------------------------------------------------------
def test_create_and_join_family(db) -> None:
    founder = make_user(db, "alice", role=UserRole.MEMBER)
    family = families.create_family(db, founder, name="  Smith  ")
    founder = _fresh(db, founder)
    assert family.name == "Smith"
    assert founder.family_id == family.id and founder.role is UserRole.ADMIN
    with pytest.raises(ConflictError, match="You already belong to a family"):
        families.create_family(db, founder, name="Again")

    joiner = make_user(db, "bobby")
    families.join_family(db, joiner, str(family.id))
    joiner = _fresh(db, joiner)
    assert joiner.role is UserRole.MEMBER

    listing = families.get_families(db)
    assert [(item["name"], item["user_count"]) for item in listing] == [("Smith", 2)]
    details = families.get_family_details(db, founder)
    assert [member["username"] for member in details["members"]] == ["alice", "bobby"]
    assert "password_hash" not in details["members"][0]


def test_first_member_of_empty_family_becomes_admin(db) -> None:
    family = Family(name="Empty")
    db.add(family)
    db.commit()
    newcomer = make_user(db, "carol", role=UserRole.MEMBER)
    families.join_family(db, newcomer, family.id)
    assert _fresh(db, newcomer).role is UserRole.ADMIN
    with pytest.raises(NotFoundError, match="Family not found"):
        families.join_family(db, make_user(db, "dave"), 12345)


def test_only_admin_cannot_leave_while_others_remain(db, family, actor) -> None:
    member = make_user(db, "bobby", family_id=family.id, role=UserRole.MEMBER)
    with pytest.raises(ConflictError, match="You are the only admin"):
        families.leave_family(db, actor)

    families.update_user_role(db, actor, member.user_id, "Admin")
    families.leave_family(db, actor)
    assert _fresh(db, actor).family_id is None
    with pytest.raises(FamilyRequiredError):
        families.leave_family(db, _fresh(db, actor))


def test_role_changes_require_admin(db, family, actor) -> None:
    member = make_user(db, "bobby", family_id=family.id, role=UserRole.MEMBER)
    with pytest.raises(PermissionDeniedError, match="Only admins can change user roles"):
        families.update_user_role(db, member, actor.user_id, "Member")
    with pytest.raises(ValidationError, match="Cannot demote yourself"):
        families.update_user_role(db, actor, actor.user_id, "Member")
    with pytest.raises(NotFoundError, match="User not found in your family"):
        families.update_user_role(db, actor, 999, "Admin")


def test_remove_user_from_family(db, family, actor) -> None:
    member = make_user(db, "bobby", family_id=family.id, role=UserRole.MEMBER)
    with pytest.raises(PermissionDeniedError, match="Only admins can remove users from family"):
        families.remove_user_from_family(db, member, actor.user_id)
    with pytest.raises(ValidationError, match="Cannot remove yourself"):
        families.remove_user_from_family(db, actor, actor.user_id)

    removed = families.remove_user_from_family(db, actor, member.user_id)
    assert removed.family_id is None
    assert removed.role == "Member"


def test_leave_and_delete_family_soft_deletes_everything(db, family, actor) -> None:
    account = accounts.create_account(db, actor, name="Main", account_type="Cash", balance="5")
    member = make_user(db, "bobby", family_id=family.id, role=UserRole.MEMBER)
    with pytest.raises(ConflictError, match="There are other members in the family"):
        families.leave_and_delete_family(db, actor)
    with pytest.raises(PermissionDeniedError, match="Only administrators can delete the family"):
        families.leave_and_delete_family(db, member)

    families.remove_user_from_family(db, actor, member.user_id)
    families.leave_and_delete_family(db, actor)
    db.expire_all()
    assert db.get(Family, family.id).deleted_at is not None
    assert db.get(Account, account.id).deleted_at is not None
    assert db.get(User, actor.user_id).family_id is None
    assert families.get_families(db) == []


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def test_register_validates_and_signs_in(db, sessions) -> None:
    user, record = users.register_user(
        db, sessions, username="alice", email=" Alice@Example.COM ", password="hunter22", fingerprint="fp"
    )
    assert user.email == "alice@example.com"
    assert user.role == "Admin"
    assert user.password_hash != "hunter22"
    assert sessions.validate(record.id).user_id == user.id
    assert not record.long_term

    with pytest.raises(ConflictError, match="User with this email already exists"):
        users.register_user(db, sessions, username="alice2", email="alice@example.com", password="hunter22")
    with pytest.raises(ValidationError, match="Username must be at least 4 characters"):
        users.register_user(db, sessions, username="al", email="al@example.com", password="hunter22")
    with pytest.raises(ValidationError, match="Password must be at least 6 characters"):
        users.register_user(db, sessions, username="alfred", email="al@example.com", password="123")
    with pytest.raises(ValidationError, match="valid email"):
        users.register_user(db, sessions, username="alfred", email="not-an-email", password="hunter22")


def test_login_success_and_remember_me(db, sessions, limiter) -> None:
    users.register_user(db, sessions, username="alice", email="alice@example.com", password="hunter22")
    user, record = users.login_user(
        db, sessions, limiter, email="ALICE@example.com", password="hunter22", remember=True, ip="1.1.1.1"
    )
    assert record.long_term
    assert user.last_login is not None


def test_login_failures_are_rate_limited(db, sessions, limiter) -> None:
    users.register_user(db, sessions, username="alice", email="alice@example.com", password="hunter22")
    for _ in range(5):
        with pytest.raises(ValidationError, match="Invalid email or password"):
            users.login_user(db, sessions, limiter, email="alice@example.com", password="wrong!", ip="9.9.9.9")
    with pytest.raises(RateLimitedError) as excinfo:
        users.login_user(db, sessions, limiter, email="alice@example.com", password="hunter22", ip="9.9.9.9")
    assert excinfo.value.status_code == 429
    assert excinfo.value.unblock_at is not None


def test_profile_update_and_password_change(db, sessions) -> None:
    alice, current = users.register_user(db, sessions, username="alice", email="alice@example.com", password="hunter22")
    users.register_user(db, sessions, username="bobby", email="bob@example.com", password="hunter22")
    actor = resolve_actor(db, alice.id)
    sessions.create(user_id=alice.id, username="alice", email="alice@example.com")

    with pytest.raises(ConflictError, match="Email is already in use by another account"):
        users.update_profile(db, sessions, actor, current.id, username="alice", email="BOB@example.com")
    updated = users.update_profile(db, sessions, actor, current.id, username="alicia", email="alicia@example.com")
    assert updated.username == "alicia"
    assert sessions.get(current.id).email == "alicia@example.com"

    with pytest.raises(ValidationError, match="Current password is incorrect"):
        users.change_password(db, sessions, actor, current.id, current_password="nope-nope", new_password="fresh-pass")
    with pytest.raises(ValidationError, match="Current password is required"):
        users.change_password(db, sessions, actor, current.id, current_password="", new_password="fresh-pass")
    ended = users.change_password(
        db, sessions, actor, current.id, current_password="hunter22", new_password="fresh-pass"
    )
    assert ended == 1
    assert [record.id for record in sessions.sessions_for(alice.id)] == [current.id]


def test_user_summary_counts(db, family, actor) -> None:
    accounts.create_account(db, actor, name="Main", account_type="Cash", balance="3")
    summary = users.get_user(db, actor)
    assert summary["account_count"] == 1
    assert summary["transaction_count"] == 1
    assert summary["recurring_transaction_count"] == 0
    assert "password_hash" not in summary
