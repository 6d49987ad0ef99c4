from __future__ import annotations

from datetime import datetime, timezone

import pytest

from a2s_engine.capability.errors import TaskCancelled
from a2s_engine.capability.loader import CapabilityLoader
from a2s_engine.capability.schemas.domain import TaskStatus, TraceEntry
from a2s_engine.runtime.context import CancelScope, ExecutionContext
from a2s_engine.state.crypto import FernetDomainCipher
from a2s_engine.state.store import StateStore


@pytest.fixture
def context(document_factory, engine_settings):
    cap = CapabilityLoader().load(
        document_factory(
            services={"api.example.com": {"baseUrl": "https://mock.api.example.com"}},
            tasks=[{"id": "pick", "type": "agent_decision", "prompt": "Pick"}],
        )
    )
    return ExecutionContext(
        capability=cap,
        inputs={"city": "Oslo"},
        store=StateStore(cipher=FernetDomainCipher("k")),
        settings=engine_settings,
        run_id="run-1",
    )


def _entry(task_id):
    return TraceEntry(task_id=task_id, node=task_id, status=TaskStatus.succeeded, started_at=datetime.now(timezone.utc))


class TestCancelScope:
    def test_cancel_propagates_to_children(self):
        parent = CancelScope()
        child = CancelScope(parent=parent)
        assert not child.cancelled
        parent.cancel("sibling failed")
        assert child.cancelled
        assert child.reason == "sibling failed"
        with pytest.raises(TaskCancelled):
            child.raise_if_cancelled("task x")

    def test_child_cancel_does_not_reach_parent(self):
        parent = CancelScope()
        child = CancelScope(parent=parent)
        child.cancel("stop")
        assert not parent.cancelled

    def test_first_reason_wins(self):
        scope = CancelScope()
        scope.cancel("first")
        scope.cancel("second")
        assert scope.reason == "first"


def test_record_outputs_and_latest(context):
    context.record_outputs("a", {"x": 1})
    context.record_outputs("b", {"x": 2, "y": 3})
    assert context.has_outputs("a")
    assert not context.has_outputs("c")
    assert context.latest == {"x": 2, "y": 3}
    assert context.capability_domains == {"api.example.com"}


def test_loop_iteration_nesting(context):
    assert context.loop_index is None
    with context.loop_iteration(2):
        with context.loop_iteration(0):
            assert context.loop_index == 0
        assert context.loop_index == 2
    assert context.loop_index is None


def test_fork_isolation_and_merge_order(context):
    context.record_outputs("before", {"v": 0})
    scope = CancelScope(parent=context.cancel)
    left = context.fork(scope)
    right = context.fork(scope)

    left.record_outputs("l", {"v": 1})
    left.add_trace(_entry("l"))
    right.record_outputs("r", {"v": 2})
    right.add_trace(_entry("r"))

    assert left.has_outputs("before")
    assert not right.has_outputs("l")
    assert not context.has_outputs("l")

    context.merge(left)
    context.merge(right)
    assert context.outputs["l"] == {"v": 1}
    assert context.outputs["r"] == {"v": 2}
    assert [e.task_id for e in context.trace] == ["l", "r"]
    assert context.latest["v"] == 2
    assert left.run_id == context.run_id


def test_fork_merges_store_writes(context):
    branch = context.fork(CancelScope())
    branch.store.set_shared("note", "hi", ["api.example.com"])
    context.merge(branch)
    assert context.store.get_shared("note", "api.example.com") == "hi"


def test_child_run(context):
    child = context.child_run(context.capability, {"city": "Bergen"})
    assert child.depth == 1
    assert child.inputs == {"city": "Bergen"}
    assert child.run_id != context.run_id
    assert child.outputs == {}
    context.cancel.cancel("parent aborted")
    assert child.cancel.cancelled
