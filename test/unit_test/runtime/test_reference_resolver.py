from __future__ import annotations

import pytest

from a2s_engine.capability.errors import AccessDenied, ResolutionError, TrustDenied
from a2s_engine.capability.loader import CapabilityLoader
from a2s_engine.runtime.context import ExecutionContext
from a2s_engine.runtime.resolver import ReferenceResolver, to_text, walk
from a2s_engine.state.crypto import FernetDomainCipher
from a2s_engine.state.store import StateStore

DOMAIN = "dogapi.dog"


@pytest.fixture
def capability(document_factory):
    return CapabilityLoader().load(
        document_factory(
            services={DOMAIN: {"baseUrl": "https://mock.dogapi.dog/api/v2"}},
            requests={"getBreed": {"servers": [{"url": "https://mock.dogapi.dog"}], "paths": {"/breeds/{id}": {"get": {}}}}},
            inputs={"breed_id": {"type": "string"}, "filters": {"type": "object"}},
            tasks=[
                {"id": "fetch", "type": "request", "service": DOMAIN, "request": "#/requests/getBreed"},
                {"id": "later", "type": "agent_decision", "prompt": "{fetch.outputs.name}"},
            ],
        )
    )


@pytest.fixture
def context(capability, engine_settings):
    return ExecutionContext(
        capability=capability,
        inputs={"breed_id": "abc", "filters": {"size": ["small", "medium"]}},
        store=StateStore(cipher=FernetDomainCipher("k")),
        settings=engine_settings,
    )


@pytest.fixture
def resolver():
    return ReferenceResolver()


def test_literals(resolver, context):
    assert resolver.resolve(42, context) == 42
    assert resolver.resolve(None, context) is None
    assert resolver.resolve("no references", context) == "no references"
    assert resolver.resolve({"value": {"a": 1}}, context) == {"a": 1}


def test_inputs_and_task_outputs(resolver, context):
    context.record_outputs("fetch", {"name": "Akita", "tags": ["big", "loyal"]})
    assert resolver.resolve({"mapping": "inputs.breed_id"}, context) == "abc"
    assert resolver.resolve({"mapping": "{inputs.filters.size[1]}"}, context) == "medium"
    assert resolver.resolve("{fetch.outputs.tags[1]}", context) == "loyal"


def test_whole_reference_keeps_type(resolver, context):
    assert resolver.resolve("{inputs.filters}", context) == {"size": ["small", "medium"]}


def test_template_interpolation(resolver, context):
    context.record_outputs("fetch", {"name": "Akita", "ok": True, "n": None})
    text = resolver.resolve("Breed {fetch.outputs.name} ({inputs.breed_id}) ok={fetch.outputs.ok} n={fetch.outputs.n}", context)
    assert text == "Breed Akita (abc) ok=true n=null"
    assert resolver.resolve("sizes: {inputs.filters.size}", context) == 'sizes: ["small", "medium"]'


def test_non_path_braces_stay_literal(resolver, context):
    assert resolver.resolve('Answer as {"choice": "..."} for {inputs.breed_id}', context) == (
        'Answer as {"choice": "..."} for abc'
    )


def test_containers_resolve_element_wise(resolver, context):
    expr = {"id": {"mapping": "inputs.breed_id"}, "list": ["{inputs.breed_id}", 1]}
    assert resolver.resolve(expr, context) == {"id": "abc", "list": ["abc", 1]}


def test_task_not_yet_run(resolver, context):
    with pytest.raises(ResolutionError) as exc_info:
        resolver.resolve("{fetch.outputs.name}", context)
    assert "has not produced outputs" in exc_info.value.message


@pytest.mark.parametrize(
    "path",
    ["inputs.missing", "nowhere.outputs.x", "inputs.filters.colour", "inputs.filters.size[5]", "inputs.breed_id.x"],
)
def test_unresolvable_paths(resolver, context, path):
    with pytest.raises(ResolutionError):
        resolver.resolve({"mapping": path}, context)


def test_local_names_win(resolver, context):
    assert resolver.resolve("/breeds/{id}", context, local={"id": "xyz"}) == "/breeds/xyz"


class TestRef:
    def test_pointer_is_idempotent_and_copied(self, resolver, context):
        first = resolver.resolve({"$ref": "#/requests/getBreed"}, context)
        first["servers"][0]["url"] = "mutated"
        second = resolver.resolve({"$ref": "#/requests/getBreed"}, context)
        assert second["servers"][0]["url"] == "https://mock.dogapi.dog"
        assert resolver.resolve_ref("#/requests/getBreed", context) == second

    def test_inputs_pointer_reads_run_input(self, resolver, context):
        assert resolver.resolve_ref("#/inputs/breed_id", context) == "abc"
        assert resolver.resolve_ref("#/inputs/filters/size/0", context) == "small"
        with pytest.raises(ResolutionError):
            resolver.resolve_ref("#/inputs/absent", context)

    def test_missing_pointer(self, resolver, context):
        with pytest.raises(ResolutionError):
            resolver.resolve({"$ref": "#/requests/nope"}, context)


class TestStateTiers:
    def test_service_reads_are_domain_bound(self, resolver, context):
        context.store.set_service(DOMAIN, "auth.token", "secret")
        assert resolver.resolve(f"{{services.{DOMAIN}.auth.token}}", context, domain=DOMAIN) == "secret"
        with pytest.raises(AccessDenied):
            resolver.resolve(f"{{services.{DOMAIN}.auth.token}}", context, domain="other.example.com")
        with pytest.raises(AccessDenied):
            resolver.resolve(f"{{services.{DOMAIN}.auth.token}}", context)

    def test_service_static_declaration(self, resolver, context):
        assert resolver.lookup(f"services.{DOMAIN}.baseUrl", context, domain=DOMAIN) == "https://mock.dogapi.dog/api/v2"
        with pytest.raises(ResolutionError):
            resolver.lookup(f"services.{DOMAIN}.nothing", context, domain=DOMAIN)

    def test_unknown_service_domain(self, resolver, context):
        with pytest.raises(ResolutionError):
            resolver.lookup("services.unknown.example.token", context, domain="unknown.example")

    def test_shared_reads_need_trust(self, resolver, context):
        context.store.set_shared("report", {"summary": "ok"}, [DOMAIN])
        assert resolver.lookup("shared.report.summary", context, domain=DOMAIN) == "ok"
        with pytest.raises(TrustDenied):
            resolver.lookup("shared.report", context, domain="other.example.com")
        with pytest.raises(ResolutionError):
            resolver.lookup("shared.absent", context, domain=DOMAIN)

    def test_temporary_reads_current_task_scope(self, resolver, context):
        with context.store.task_scope("fetch"):
            context.store.set_temporary("page", {"n": 3})
            assert resolver.lookup("temporary.page.n", context) == 3
            assert resolver.lookup("temp.page", context) == {"n": 3}
        with pytest.raises(ResolutionError):
            resolver.lookup("temporary.page", context)


def test_capability_header(resolver, context):
    assert resolver.lookup("capability.id", context) == "testCapability"
    assert resolver.lookup("capability.name", context) == "testCapability"
    assert resolver.lookup("capability.authors[0].name", context) == "Engine Tests"


def test_loop_counters(resolver, context):
    with pytest.raises(ResolutionError):
        resolver.lookup("loop.index", context)
    with context.loop_iteration(2):
        assert resolver.lookup("loop.index", context) == 2
        assert resolver.lookup("loop.iteration", context) == 3


def test_helpers():
    assert walk({"a": [{"b": 1}]}, ["a", 0, "b"], "a[0].b") == 1
    assert to_text(1.5) == "1.5"
    assert to_text(False) == "false"
