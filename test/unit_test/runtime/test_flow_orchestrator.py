from __future__ import annotations

import asyncio

import pytest

from a2s_engine.capability.errors import ErrorCategory
from a2s_engine.capability.schemas.domain import RunStatus, TaskStatus
from a2s_engine.invokers.base import HttpResponse
from a2s_engine.runtime.orchestrator import FlowOrchestrator

API = "api.example.com"
BASE = "https://mock.api.example.com"


def _decision(task_id, prompt=None, **extra):
    task = {"id": task_id, "type": "agent_decision", "prompt": prompt or task_id}
    task.update(extra)
    return task


def _request(task_id, path, **extra):
    task = {"id": task_id, "type": "request", "service": API, "path": path}
    task.update(extra)
    return task


@pytest.fixture
def echo(llm_stub):
    """Decision tasks answer ``{"v": <rendered prompt>}``."""
    llm_stub.decide = lambda prompt, context: {"v": prompt}
    return llm_stub


@pytest.fixture
def load(engine, document_factory):
    def _load(tasks, **fields):
        fields.setdefault("services", {API: {"baseUrl": BASE}})
        return engine.load_capability(document_factory(tasks=tasks, **fields))

    return _load


def _ran(result):
    return [e.task_id for e in result.trace]


class TestSequence:
    @pytest.mark.asyncio
    async def test_declaration_order_and_outputs(self, engine, load, echo):
        cap = load(
            [_decision("a", "A"), _decision("b", "B after {a.outputs.v}"), _decision("c", "C")],
            outputs={"first": {"mapping": "a.outputs.v"}, "v": {"type": "string"}},
        )
        result = await engine.execute(cap)
        assert result.status is RunStatus.completed
        assert _ran(result) == ["a", "b", "c"]
        assert echo.calls[1]["prompt"] == "B after A"
        assert result.outputs == {"first": "A", "v": "C"}

    @pytest.mark.asyncio
    async def test_next_jumps_forward(self, engine, load, echo):
        cap = load([_decision("a", next="c"), _decision("b"), _decision("c")])
        result = await engine.execute(cap)
        assert _ran(result) == ["a", "c"]

    @pytest.mark.asyncio
    async def test_next_end_stops_the_run(self, engine, load, echo):
        cap = load([_decision("a", next="end"), _decision("b")])
        result = await engine.execute(cap)
        assert result.status is RunStatus.completed
        assert _ran(result) == ["a"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("n,expected", [(5, ["check", "big"]), (1, ["check", "small"])])
    async def test_condition_task_next_by_branch(self, engine, load, echo, n, expected):
        cap = load(
            [
                {"id": "check", "type": "condition", "condition": "inputs.n > 3", "next": {"true": "big", "false": "small"}},
                _decision("big", next="end"),
                _decision("small"),
            ],
            inputs={"n": {"type": "integer", "required": True}},
        )
        result = await engine.execute(cap, {"n": n})
        assert _ran(result) == expected


class TestFailurePolicy:
    @pytest.mark.asyncio
    async def test_abort_is_the_default(self, engine, load, echo):
        cap = load([_request("t", "/missing"), _decision("after")], outputs={"v": {"default": "none"}})
        result = await engine.execute(cap)
        assert result.status is RunStatus.aborted
        assert result.error.category is ErrorCategory.HTTP_ERROR
        assert result.error.task_id == "t"
        assert _ran(result) == ["t"]
        assert result.outputs == {}
        assert echo.calls == []

    @pytest.mark.asyncio
    async def test_continue_records_failure_and_proceeds(self, engine, load, echo):
        cap = load(
            [
                _request("t", "/missing", error_handling={"on_failure": {"action": "continue"}}),
                _decision("after"),
            ]
        )
        result = await engine.execute(cap)
        assert result.status is RunStatus.completed
        assert [(e.task_id, e.status) for e in result.trace] == [
            ("t", TaskStatus.failed),
            ("after", TaskStatus.succeeded),
        ]
        assert result.trace[0].error.category is ErrorCategory.HTTP_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("successor", ["c", {"true": "b", "default": "c"}])
    async def test_continue_follows_the_declared_successor(self, engine, load, echo, successor):
        cap = load(
            [
                _request("t", "/missing", next=successor, error_handling={"on_failure": {"action": "continue"}}),
                _decision("b"),
                _decision("c"),
            ]
        )
        result = await engine.execute(cap)
        assert result.status is RunStatus.completed
        assert [(e.task_id, e.status) for e in result.trace] == [
            ("t", TaskStatus.failed),
            ("c", TaskStatus.succeeded),
        ]
        assert [c["prompt"] for c in echo.calls] == ["c"]

    @pytest.mark.asyncio
    async def test_custom_abort_message(self, engine, load):
        cap = load([_request("t", "/missing", error_handling={"on_failure": {"message": "lookup failed"}})])
        result = await engine.execute(cap)
        assert result.error.message == "lookup failed"


class TestInputs:
    @pytest.mark.asyncio
    async def test_defaults_are_applied(self, engine, load, echo):
        cap = load(
            [_decision("a", "size={inputs.size}")],
            inputs={"size": {"type": "string", "default": "small"}},
        )
        result = await engine.execute(cap)
        assert result.ok
        assert echo.calls[0]["prompt"] == "size=small"

    @pytest.mark.asyncio
    async def test_missing_required_input(self, engine, load, echo):
        cap = load([_decision("a", "{inputs.city}")], inputs={"city": {"type": "string", "required": True}})
        result = await engine.execute(cap)
        assert result.status is RunStatus.aborted
        assert result.error.category is ErrorCategory.VALIDATION
        assert result.trace == []

    @pytest.mark.asyncio
    async def test_wrong_input_type(self, engine, load, echo):
        cap = load([_decision("a")], inputs={"n": {"type": "integer"}})
        result = await engine.execute(cap, {"n": "3"})
        assert result.error.category is ErrorCategory.VALIDATION

    def test_bind_inputs(self, load):
        cap = load([_decision("a")], inputs={"n": {"type": "integer", "default": 2}, "m": {"type": "string"}})
        assert FlowOrchestrator.bind_inputs(cap, {"extra": 1}) == {"extra": 1, "n": 2}


class TestParallel:
    @pytest.mark.asyncio
    async def test_branches_merge_in_branch_order(self, engine, load, echo):
        cap = load(
            [_decision("a", "A"), _decision("b", "B"), _decision("c", "{a.outputs.v}+{b.outputs.v}")],
            flow=[{"type": "parallel", "branches": [["a"], ["b"]]}, "c"],
        )
        result = await engine.execute(cap)
        assert result.ok
        assert _ran(result) == ["a", "b", "c"]
        assert echo.calls[-1]["prompt"] == "A+B"

    @pytest.mark.asyncio
    async def test_composite_parallel_task(self, engine, load, echo):
        cap = load(
            [
                {"id": "both", "type": "parallel", "tasks": ["a", "b"]},
                _decision("a"),
                _decision("b"),
            ],
            flow=["both"],
        )
        result = await engine.execute(cap)
        assert sorted(_ran(result)) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_first_failure_cancels_siblings(self, engine, load, http_stub):
        async def slow(request):
            await asyncio.sleep(0.2)
            return HttpResponse(status=200, body={})

        http_stub.routes[("GET", f"{BASE}/slow")] = slow
        cap = load(
            [_request("slow", "/slow"), _request("after", "/slow"), _request("fail", "/missing")],
            flow=[{"type": "parallel", "branches": [["slow", "after"], ["fail"]]}],
        )
        result = await engine.execute(cap)
        assert result.status is RunStatus.aborted
        assert result.error.task_id == "fail"
        assert result.error.category is ErrorCategory.HTTP_ERROR
        statuses = {e.task_id: e for e in result.trace}
        assert "after" not in statuses
        assert statuses["slow"].error.category is ErrorCategory.CANCELLED


class TestConditionNodes:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("n,expected", [(5, ["check", "yes"]), (1, ["check", "no"])])
    async def test_condition_task_branches(self, engine, load, echo, n, expected):
        cap = load(
            [{"id": "check", "type": "condition", "condition": "inputs.n > 3"}, _decision("yes"), _decision("no")],
            inputs={"n": {"type": "integer"}},
            flow=[{"type": "condition", "task": "check", "then": ["yes"], "else": ["no"]}],
        )
        result = await engine.execute(cap, {"n": n})
        assert _ran(result) == expected
        assert result.trace[0].branch == ("true" if n > 3 else "false")

    @pytest.mark.asyncio
    async def test_named_cases(self, engine, load, echo):
        cap = load(
            [
                {"id": "size", "type": "condition", "cases": {"small": "inputs.n < 3", "large": "inputs.n > 10"}},
                _decision("s"),
                _decision("l"),
                _decision("m"),
            ],
            inputs={"n": {"type": "integer"}},
            flow=[{"type": "condition", "task": "size", "cases": {"small": ["s"], "large": ["l"]}, "default": ["m"]}],
        )
        assert _ran(await engine.execute(cap, {"n": 20})) == ["size", "l"]
        assert _ran(await engine.execute(cap, {"n": 5})) == ["size", "m"]

    @pytest.mark.asyncio
    async def test_inline_expression_without_matching_branch(self, engine, load, echo):
        cap = load(
            [_decision("yes"), _decision("last")],
            inputs={"n": {"type": "integer"}},
            flow=[{"type": "condition", "if": "inputs.n > 3", "then": ["yes"]}, "last"],
        )
        result = await engine.execute(cap, {"n": 1})
        assert result.ok
        assert [(e.task_id, e.branch) for e in result.trace] == [("flow.steps[0]", "false"), ("last", None)]

    @pytest.mark.asyncio
    async def test_expression_error_aborts(self, engine, load, echo):
        cap = load(
            [_decision("yes")],
            inputs={"n": {"type": "object"}},
            flow=[{"type": "condition", "if": "inputs.n > 3", "then": ["yes"]}],
        )
        result = await engine.execute(cap, {"n": {"a": 1}})
        assert result.error.category is ErrorCategory.CONDITION


class TestLoops:
    @pytest.mark.asyncio
    async def test_fixed_bound(self, engine, load, echo):
        cap = load([_decision("tick", "tick {loop.index}")], flow=[{"type": "loop", "max_iterations": 3, "tasks": ["tick"]}])
        result = await engine.execute(cap)
        assert [e.iteration for e in result.trace] == [0, 1, 2]
        assert [c["prompt"] for c in echo.calls] == ["tick 0", "tick 1", "tick 2"]

    @pytest.mark.asyncio
    async def test_while(self, engine, load, echo):
        cap = load([_decision("tick")], flow=[{"type": "while", "while": "loop.index < 2", "tasks": ["tick"]}])
        result = await engine.execute(cap)
        assert len(result.trace) == 2

    @pytest.mark.asyncio
    async def test_until(self, engine, load, llm_stub):
        llm_stub.decide = lambda prompt, context: {"done": prompt.endswith("1")}
        cap = load(
            [_decision("tick", "tick {loop.index}")],
            flow=[{"type": "loop", "until": "tick.outputs.done", "max_iterations": 10, "tasks": ["tick"]}],
        )
        result = await engine.execute(cap)
        assert len(result.trace) == 2

    @pytest.mark.asyncio
    async def test_settings_bound_caps_unbounded_loops(self, engine, load, echo, engine_settings):
        cap = load([_decision("tick")], flow=[{"type": "loop", "while": "true", "tasks": ["tick"]}])
        result = await engine.execute(cap)
        assert result.ok
        assert len(result.trace) == engine_settings.max_loop_iterations

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action,status", [("abort", RunStatus.aborted), ("continue", RunStatus.completed)])
    async def test_timeout(self, engine, load, echo, http_stub, action, status):
        async def slow(request):
            await asyncio.sleep(0.2)
            return HttpResponse(status=200, body={})

        http_stub.routes[("GET", f"{BASE}/slow")] = slow
        cap = load(
            [_request("poll", "/slow"), _decision("after")],
            flow=[
                {
                    "type": "loop",
                    "max_iterations": 10,
                    "timeout": 0.05,
                    "tasks": ["poll"],
                    "error_handling": {"on_failure": {"action": action}},
                },
                "after",
            ],
        )
        result = await engine.execute(cap)
        assert result.status is status
        loop_entry = next(e for e in result.trace if e.node == "loop")
        assert loop_entry.error.category is ErrorCategory.TIMEOUT
        assert ("after" in _ran(result)) is (action == "continue")


class TestTry:
    @pytest.mark.asyncio
    async def test_matching_catch_runs_fallback(self, engine, load, echo):
        cap = load(
            [_request("bad", "/missing"), _decision("fallback"), _decision("after")],
            flow=[
                {"type": "try", "try": ["bad"], "catch": [{"errors": ["http_error"], "tasks": ["fallback"]}]},
                "after",
            ],
        )
        result = await engine.execute(cap)
        assert result.ok
        assert _ran(result) == ["bad", "fallback", "after"]

    @pytest.mark.asyncio
    async def test_other_categories_propagate(self, engine, load, echo):
        cap = load(
            [_request("bad", "/missing"), _decision("fallback")],
            flow=[{"type": "try", "try": ["bad"], "catch": {"errors": "RATE_LIMIT", "tasks": ["fallback"]}}],
        )
        result = await engine.execute(cap)
        assert result.status is RunStatus.aborted
        assert _ran(result) == ["bad"]

    @pytest.mark.asyncio
    async def test_catch_all(self, engine, load, echo):
        cap = load(
            [_request("bad", "/missing"), _decision("fallback")],
            flow=[{"type": "try", "try": ["bad"], "catch": [{"tasks": ["fallback"]}]}],
        )
        assert (await engine.execute(cap)).ok


class TestNestedCapabilities:
    @pytest.fixture
    def resolver(self, document_factory):
        child = document_factory(
            id="double",
            inputs={"n": {"type": "integer", "required": True}},
            outputs={"value": {"type": "integer", "mapping": "calc.outputs.value"}},
            tasks=[_decision("calc", "Double {inputs.n}")],
        )
        calls = []

        def resolve(namespace, capability_id, version_constraint, checksum, registry):
            calls.append(capability_id)
            return child

        resolve.calls = calls
        return resolve

    @pytest.fixture
    def outer(self, engine, document_factory, resolver):
        return engine.load_capability(
            document_factory(
                id="outer",
                type="aggregate",
                inputs={"x": {"type": "integer"}},
                outputs={"doubled": {"type": "integer"}},
                dependencies={"double": {"id": "double", "version": "^1.0.0"}},
                tasks=[
                    {
                        "id": "sub",
                        "type": "capability",
                        "capability": "double",
                        "input_mapping": {"n": "{inputs.x}"},
                        "output_mapping": {"doubled": "{outputs.value}"},
                    }
                ],
            ),
            dependency_resolver=resolver,
        )

    @pytest.mark.asyncio
    async def test_child_run(self, engine, outer, resolver, llm_stub):
        llm_stub.decide = lambda prompt, context: {"value": int(prompt.split()[-1]) * 2}
        result = await engine.execute(outer, {"x": 4})
        assert result.ok, result.error
        assert result.outputs == {"doubled": 8}
        assert resolver.calls == ["double"]
        (entry,) = result.trace
        assert entry.task_id == "sub"
        assert [c.task_id for c in entry.children] == ["calc"]

    @pytest.mark.asyncio
    async def test_child_failure(self, engine, outer, llm_stub):
        def fail(prompt, context):
            raise RuntimeError("model unavailable")

        llm_stub.decide = fail
        result = await engine.execute(outer, {"x": 4})
        assert result.status is RunStatus.aborted
        assert result.error.category is ErrorCategory.CAPABILITY_FAILED
        assert result.error.task_id == "sub"
