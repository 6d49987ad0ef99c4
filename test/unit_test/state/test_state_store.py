from __future__ import annotations

import pytest

from a2s_engine.capability.errors import AccessDenied, NotFound, StateError, TrustDenied, ValidationError
from a2s_engine.capability.schemas.document import VariableSpec
from a2s_engine.state.crypto import FernetDomainCipher
from a2s_engine.state.store import ServiceVault, SharedVault, StateStore


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return StateStore(cipher=FernetDomainCipher("unit-test-key"), clock=clock)


class TestServiceTier:
    def test_round_trip_for_owning_domain(self, store):
        store.set_service("api.example.com", "token", {"value": "abc", "scopes": ["read"]})
        assert store.get_service("api.example.com", "token") == {"value": "abc", "scopes": ["read"]}

    def test_values_are_encrypted_at_rest(self):
        vault = ServiceVault()
        store = StateStore(service_vault=vault, cipher=FernetDomainCipher("k"))
        store.set_service("api.example.com", "token", "super-secret")
        entry = vault.get("api.example.com", "token")
        assert b"super-secret" not in entry.ciphertext

    def test_foreign_domain_is_denied_not_missing(self, store):
        store.set_service("a.example.com", "token", "abc")
        with pytest.raises(AccessDenied):
            store.get_service("b.example.com", "token")
        with pytest.raises(NotFound):
            store.get_service("b.example.com", "other")

    def test_same_name_in_two_domains(self, store):
        store.set_service("a.example.com", "token", "for-a")
        store.set_service("b.example.com", "token", "for-b")
        assert store.get_service("a.example.com", "token") == "for-a"
        assert store.get_service("b.example.com", "token") == "for-b"
        assert store.service_domains() == {"a.example.com", "b.example.com"}

    def test_expiry(self, store, clock):
        store.set_service("a.example.com", "token", "abc", expiry=60)
        clock.now += 59
        assert store.get_service("a.example.com", "token") == "abc"
        clock.now += 1
        with pytest.raises(NotFound):
            store.get_service("a.example.com", "token")

    def test_expiry_from_declaration(self, store, clock):
        store.set_service("a.example.com", "token", "abc", spec=VariableSpec(type="string", expiry=10))
        clock.now += 10
        with pytest.raises(NotFound):
            store.get_service("a.example.com", "token")

    def test_validation_rejects_before_write(self, store):
        with pytest.raises(ValidationError):
            store.set_service("a.example.com", "token", 42, spec=VariableSpec(type="string"))
        with pytest.raises(NotFound):
            store.get_service("a.example.com", "token")

    def test_domain_is_required(self, store):
        with pytest.raises(StateError):
            store.set_service("", "token", "abc")


class TestSharedTier:
    def test_trusted_domain_reads(self, store):
        store.set_shared("report", {"ok": True}, ["a.example.com", "b.example.com"])
        assert store.get_shared("report", "b.example.com") == {"ok": True}

    def test_untrusted_domain_is_denied(self, store):
        store.set_shared("report", "r", ["a.example.com"])
        with pytest.raises(TrustDenied):
            store.get_shared("report", "c.example.com")
        with pytest.raises(TrustDenied):
            store.get_shared("report", None)

    def test_missing(self, store):
        with pytest.raises(NotFound):
            store.get_shared("report", "a.example.com")

    def test_revocation_applies_to_next_read(self, store):
        store.set_shared("report", "r", ["a.example.com", "b.example.com"])
        store.revoke_trust("report", "b.example.com")
        with pytest.raises(TrustDenied):
            store.get_shared("report", "b.example.com")
        assert store.get_shared("report", "a.example.com") == "r"

    def test_rewrite_with_new_grant_clears_revocation(self, store):
        store.set_shared("report", "r", ["a.example.com"])
        store.revoke_trust("report", "a.example.com")
        store.set_shared("report", "r2", ["a.example.com"])
        assert store.get_shared("report", "a.example.com") == "r2"

    def test_trust_collaborator_is_consulted(self, clock):
        trusted = {"a.example.com"}
        store = StateStore(is_trusted=lambda d: d in trusted, clock=clock)
        store.set_shared("report", "r", ["a.example.com"])
        assert store.get_shared("report", "a.example.com") == "r"
        trusted.clear()
        with pytest.raises(TrustDenied):
            store.get_shared("report", "a.example.com")


class TestTemporaryTier:
    def test_values_live_in_the_task_scope(self, store):
        with store.task_scope("fetch"):
            store.set_temporary("page", 1)
            assert store.get_temporary("page") == 1
        with store.task_scope("next"):
            with pytest.raises(NotFound):
                store.get_temporary("page")

    def test_inner_scope_does_not_see_outer_values(self, store):
        with store.task_scope("outer"):
            store.set_temporary("x", 1)
            with store.task_scope("inner"):
                with pytest.raises(NotFound):
                    store.get_temporary("x")
            assert store.get_temporary("x") == 1

    def test_set_outside_a_task(self, store):
        with pytest.raises(StateError):
            store.set_temporary("x", 1)

    def test_pop_must_be_innermost(self, store):
        outer = store.push_scope("outer")
        store.push_scope("inner")
        with pytest.raises(StateError):
            store.pop_scope(outer)

    def test_scope_is_popped_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.task_scope("boom"):
                store.set_temporary("x", 1)
                raise RuntimeError("boom")
        with pytest.raises(StateError):
            store.set_temporary("y", 2)


class TestForkAndCommit:
    def test_branch_writes_are_invisible_until_commit(self, store):
        left = store.fork()
        right = store.fork()
        left.set_shared("from_left", 1, ["a.example.com"])
        left.set_service("a.example.com", "token", "left")

        with pytest.raises(NotFound):
            right.get_shared("from_left", "a.example.com")
        with pytest.raises(NotFound):
            store.get_service("a.example.com", "token")

        store.commit(left)
        assert store.get_shared("from_left", "a.example.com") == 1
        assert store.get_service("a.example.com", "token") == "left"

    def test_fork_sees_parent_state_at_fork_time(self, store):
        store.set_shared("seed", "s", ["a.example.com"])
        child = store.fork()
        assert child.get_shared("seed", "a.example.com") == "s"

    def test_revocation_reaches_running_branches(self, store):
        store.set_shared("report", "r", ["a.example.com"])
        child = store.fork()
        store.revoke_trust("report", "a.example.com")
        with pytest.raises(TrustDenied):
            child.get_shared("report", "a.example.com")

    def test_branch_revocation_is_invisible_to_siblings_until_commit(self, store):
        store.set_shared("report", "r", ["a.example.com"])
        left = store.fork()
        right = store.fork()
        left.revoke_trust("report", "a.example.com")

        with pytest.raises(TrustDenied):
            left.get_shared("report", "a.example.com")
        assert right.get_shared("report", "a.example.com") == "r"
        assert store.get_shared("report", "a.example.com") == "r"

        store.commit(left)
        with pytest.raises(TrustDenied):
            store.get_shared("report", "a.example.com")

    def test_nested_fork_commits_propagate(self, store):
        child = store.fork()
        grandchild = child.fork()
        grandchild.set_shared("deep", 1, ["a.example.com"])
        child.commit(grandchild)
        store.commit(child)
        assert store.get_shared("deep", "a.example.com") == 1

    def test_spawn_shares_vaults_but_not_scopes(self, store):
        nested = store.spawn()
        nested.set_service("a.example.com", "token", "abc")
        assert store.get_service("a.example.com", "token") == "abc"
        with store.task_scope("outer"):
            with pytest.raises(StateError):
                nested.set_temporary("x", 1)

    def test_vault_snapshot_is_isolated(self):
        vault = SharedVault()
        snap = vault.snapshot()
        StateStore(shared_vault=vault).set_shared("x", 1, ["a"])
        assert snap.get("x") is None
