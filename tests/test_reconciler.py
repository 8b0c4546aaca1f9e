import pytest
from sqlalchemy.exc import IntegrityError

from authservice.core.exceptions import ConflictError, RoleNotFoundError, UserNotFoundError, ValidationError
from authservice.core.reconciler import RoleReconciler
from authservice.directory.exceptions import DirectoryAPIError
from authservice.store import IdentityStore

from conftest import FakeDirectory


@pytest.fixture()
def reconciler(store, directory, authz):
    def _make(directory=directory, **config):
        return RoleReconciler(store, directory, authz(**config))
    return _make


def _fresh_roles(session_factory, user_id):
    store = IdentityStore(session_factory())
    try:
        return store.role_names_for_user(user_id)
    finally:
        store.close()


# ─────────────────────────────────────────────────────────────────────────────
# Incremental changes
# ─────────────────────────────────────────────────────────────────────────────
def test_incremental_swap_user_for_admin(reconciler, make_user, directory, session_factory):
    user = make_user(external_id="sub-john", roles=("USER",))

    result = reconciler().apply_incremental(user.id, ["ADMIN"], ["USER"], "manager@example.com")

    assert _fresh_roles(session_factory, user.id) == ["ADMIN"]
    assert result.roles == ["ADMIN"]
    assert result.local_added == ["ADMIN"]
    assert result.local_removed == ["USER"]
    assert directory.mutating_calls == [("add", "sub-john", "ADMIN"), ("remove", "sub-john", "USER")]
    assert result.remote_in_sync


def test_hr_maps_to_admin_group(reconciler, make_user, directory):
    user = make_user(external_id="sub-hr", roles=("USER",))

    reconciler().apply_incremental(user.id, ["HR"], [], "manager@example.com")

    assert directory.mutating_calls == [("add", "sub-hr", "ADMIN")]


def test_removing_one_of_two_elevated_roles_keeps_admin_group(reconciler, make_user, directory):
    user = make_user(roles=("HR", "MANAGER_L1"))

    reconciler().apply_incremental(user.id, [], ["HR"], "manager@example.com")

    assert directory.mutating_calls == []


def test_incremental_leaves_unmentioned_roles(reconciler, make_user, session_factory):
    user = make_user(roles=("USER", "HR"))

    reconciler().apply_incremental(user.id, ["MANAGER_L1"], [], "ops")

    assert _fresh_roles(session_factory, user.id) == ["HR", "MANAGER_L1", "USER"]


def test_incremental_is_idempotent_for_existing_roles(reconciler, make_user, directory, session_factory):
    user = make_user(roles=("USER",))

    result = reconciler().apply_incremental(user.id, ["USER"], ["ADMIN"], "ops")

    assert result.local_added == []
    assert result.local_removed == []
    assert directory.mutating_calls == []
    assert _fresh_roles(session_factory, user.id) == ["USER"]


@pytest.mark.parametrize(
    "add, remove, message",
    [
        ([], [], "At least one role"),
        (["ADMIN"], ["ADMIN"], "both added and removed"),
        ([" "], [], "blank"),
    ],
)
def test_incremental_validation(reconciler, make_user, directory, add, remove, message):
    user = make_user(roles=("USER",))
    with pytest.raises(ValidationError, match=message):
        reconciler().apply_incremental(user.id, add, remove, "ops")
    assert directory.calls == []


# ─────────────────────────────────────────────────────────────────────────────
# Full replacement
# ─────────────────────────────────────────────────────────────────────────────
def test_replace_all_sets_exact_roles_and_dedupes_remote_calls(reconciler, make_user, directory, session_factory, store):
    user = make_user(external_id="sub-r", roles=("USER",))

    result = reconciler().replace_all(user.id, ["ADMIN", "HR", "MANAGER_L2", "ADMIN"], "manager@example.com")

    assert _fresh_roles(session_factory, user.id) == ["ADMIN", "HR", "MANAGER_L2"]
    assert result.roles == ["ADMIN", "HR", "MANAGER_L2"]
    assert result.local_removed == ["USER"]
    # Three roles converge on one group: one add, one remove, nothing else
    assert directory.mutating_calls == [("add", "sub-r", "ADMIN"), ("remove", "sub-r", "USER")]

    assignments = store.list_role_assignments_for_user(user.id)
    assert {assignment.assigned_by for assignment in assignments} == {"manager@example.com"}


def test_replace_all_with_same_roles_is_a_no_op(reconciler, make_user, directory):
    user = make_user(roles=("ADMIN", "USER"))

    result = reconciler().replace_all(user.id, ["USER", "ADMIN"], "ops")

    assert result.local_added == [] and result.local_removed == []
    assert directory.mutating_calls == []


def test_replace_all_requires_a_role(reconciler, make_user):
    user = make_user()
    with pytest.raises(ValidationError, match="At least one role is required"):
        reconciler().replace_all(user.id, [], "ops")


def test_unknown_user(reconciler):
    with pytest.raises(UserNotFoundError, match="User not found with ID: 999"):
        reconciler().replace_all(999, ["USER"], "ops")


def test_unknown_role_aborts_before_any_change(reconciler, make_user, directory, session_factory):
    user = make_user(roles=("USER",))

    with pytest.raises(RoleNotFoundError, match="GHOST"):
        reconciler().replace_all(user.id, ["ADMIN", "GHOST"], "ops")

    assert _fresh_roles(session_factory, user.id) == ["USER"]
    assert directory.calls == []


def test_local_failure_rolls_back_everything(reconciler, make_user, directory, store, session_factory, monkeypatch):
    user = make_user(roles=("USER",))

    def broken_create(*args, **kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(store, "create_role_assignment", broken_create)

    with pytest.raises(RuntimeError):
        reconciler().replace_all(user.id, ["ADMIN"], "ops")

    # USER was deleted inside the failed transaction and must be back
    assert _fresh_roles(session_factory, user.id) == ["USER"]
    assert directory.calls == []


# ─────────────────────────────────────────────────────────────────────────────
# Remote failures and identity fallback
# ─────────────────────────────────────────────────────────────────────────────
def test_remote_failure_keeps_local_commit_and_continues(reconciler, make_user, directory, session_factory):
    user = make_user(external_id="sub-f", roles=("USER",))
    directory.fail("add", "ADMIN", DirectoryAPIError(500, "boom", "/groups"))

    result = reconciler().apply_incremental(user.id, ["ADMIN"], ["USER"], "ops")

    assert _fresh_roles(session_factory, user.id) == ["ADMIN"]
    # The remove still ran after the failed add
    assert directory.mutating_calls == [("add", "sub-f", "ADMIN"), ("remove", "sub-f", "USER")]
    assert result.remote_removed == ["USER"]
    assert len(result.remote_failures) == 1
    failure = result.remote_failures[0]
    assert failure.operation == "add" and failure.group_name == "ADMIN"
    assert result.to_dict()["remoteFailures"] == 1


def test_identity_fallback_retries_once_with_resolved_key(reconciler, make_user):
    user = make_user(external_id="stale-sub", email="jo@example.com", username="jo", roles=("USER",))
    directory = FakeDirectory(known_keys={"kc-id-1"}, aliases={("username", "jo"): "kc-id-1"})

    result = reconciler(directory=directory).apply_incremental(user.id, ["ADMIN"], [], "ops")

    assert directory.mutating_calls == [("add", "stale-sub", "ADMIN"), ("add", "kc-id-1", "ADMIN")]
    assert result.remote_added == ["ADMIN"]
    assert result.remote_in_sync


def test_identity_fallback_gives_up_after_one_retry(reconciler, make_user):
    user = make_user(external_id="stale-sub", email="jo@example.com", username="jo", roles=("USER",))
    # Alias resolves, but to a key the directory also rejects
    directory = FakeDirectory(known_keys=set(), aliases={("email", "jo@example.com"): "also-bad"})

    result = reconciler(directory=directory).apply_incremental(user.id, ["ADMIN"], [], "ops")

    assert directory.mutating_calls == [("add", "stale-sub", "ADMIN"), ("add", "also-bad", "ADMIN")]
    assert len(result.remote_failures) == 1


def test_sync_disabled_makes_no_remote_calls(reconciler, make_user, directory, session_factory):
    user = make_user(roles=("USER",))

    reconciler(sync_groups=False).apply_incremental(user.id, ["ADMIN"], ["USER"], "ops")

    assert _fresh_roles(session_factory, user.id) == ["ADMIN"]
    assert directory.calls == []


def test_groups_outside_allow_list_are_never_pushed(reconciler, make_user, directory):
    user = make_user(roles=("USER",))

    reconciler(allowed_groups={"ADMIN"}).apply_incremental(user.id, ["ADMIN"], ["USER"], "ops")

    assert directory.mutating_calls == [("add", user.external_id, "ADMIN")]


# ─────────────────────────────────────────────────────────────────────────────
# Resync
# ─────────────────────────────────────────────────────────────────────────────
def test_resync_repairs_drift_and_second_pass_is_quiet(reconciler, make_user):
    user = make_user(external_id="sub-d", roles=("HR",))
    directory = FakeDirectory(memberships={"sub-d": {"USER", "UNMANAGED"}})
    r = reconciler(directory=directory)

    first = r.resync(user.id)
    assert first.remote_added == ["ADMIN"]
    assert first.remote_removed == ["USER"]
    # Groups outside the allow-list are left alone
    assert "UNMANAGED" in directory.memberships["sub-d"]

    directory.calls.clear()
    second = r.resync(user.id)
    assert directory.mutating_calls == []
    assert second.remote_added == [] and second.remote_removed == []


def test_resync_records_failure_when_membership_unreadable(reconciler, make_user, directory):
    user = make_user(roles=("USER",))
    directory.fail("list", None, DirectoryAPIError(503, "unavailable", "/groups"))

    result = reconciler().resync(user.id)

    assert directory.mutating_calls == []
    assert len(result.remote_failures) == 1
    assert result.remote_failures[0].operation == "list"


def test_resync_without_sync_is_a_no_op(reconciler, make_user, directory):
    user = make_user(roles=("USER",))

    result = reconciler(sync_groups=False).resync(user.id)

    assert result.roles == ["USER"]
    assert directory.calls == []


def test_lost_race_on_assignment_is_a_conflict(reconciler, make_user, directory, store, session_factory, monkeypatch):
    user = make_user(roles=("USER",))

    def duplicate_insert(*args, **kwargs):
        raise IntegrityError("INSERT INTO user_roles", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(store, "create_role_assignment", duplicate_insert)

    with pytest.raises(ConflictError, match="changed concurrently"):
        reconciler().replace_all(user.id, ["ADMIN"], "ops")

    assert _fresh_roles(session_factory, user.id) == ["USER"]
    assert directory.calls == []


# ─────────────────────────────────────────────────────────────────────────────
# Initial push for new users
# ─────────────────────────────────────────────────────────────────────────────
def test_push_initial_groups_only_adds(reconciler, make_user):
    user = make_user(external_id="sub-new", roles=("USER",))
    directory = FakeDirectory(memberships={"sub-new": {"ADMIN"}})

    result = reconciler(directory=directory).push_initial_groups(user.id)

    assert directory.mutating_calls == [("add", "sub-new", "USER")]
    assert directory.memberships["sub-new"] == {"ADMIN", "USER"}
    assert result.remote_added == ["USER"]
    assert result.remote_removed == []
