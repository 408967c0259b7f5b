import pytest

from gatekit.domain.models import EndpointDescriptor
from gatekit.errors import AssemblyError, ConfigurationError
from gatekit.graph.model import GraphNode, ResourceArena
from gatekit.routing.resolver import (
    AUTH_HEADER_PARAM,
    function_id,
    resolve_endpoints,
    validate_endpoint_table,
)


def _arena(*functions: str) -> ResourceArena:
    arena = ResourceArena()
    arena.add_node(GraphNode(id="gateway:api", type="gateway", label="api"))
    arena.add_node(GraphNode(id="authorizer:jwt", type="authorizer", label="jwt"))
    for f in functions:
        arena.add_node(GraphNode(id=function_id(f), type="function", label=f))
    return arena


def test_one_binding_per_descriptor_in_input_order():
    rows = [
        {"path": "/z", "method": "get", "function": "f1"},
        {"path": "/a", "method": "POST", "function": "f2"},
        {"path": "/m", "method": "GET", "function": "f1"},
    ]
    bindings = resolve_endpoints(rows, _arena("f1", "f2"), "gateway:api", "authorizer:jwt")

    assert [(b.descriptor.method, b.descriptor.path) for b in bindings] == [
        ("GET", "/z"),
        ("POST", "/a"),
        ("GET", "/m"),
    ]


def test_same_path_different_methods_is_fine():
    rows = [
        {"path": "/items", "method": "GET", "function": "f1"},
        {"path": "/items", "method": "POST", "function": "f1"},
    ]
    arena = _arena("f1")
    bindings = resolve_endpoints(rows, arena, "gateway:api", None)
    assert len(bindings) == 2
    assert bindings[0].route == bindings[1].route


def test_duplicate_path_method_fails_before_touching_the_arena():
    rows = [
        {"path": "/a", "method": "GET", "function": "f1"},
        {"path": "/b", "method": "GET", "function": "f1"},
        {"path": "/a/", "method": "get", "function": "f1"},  # normalizes to GET /a
    ]
    arena = _arena("f1")
    before = len(arena)

    with pytest.raises(ConfigurationError, match="Duplicate endpoint"):
        resolve_endpoints(rows, arena, "gateway:api", None)

    assert len(arena) == before
    assert arena.edges == []


def test_missing_fields_are_configuration_errors():
    with pytest.raises(ConfigurationError):
        validate_endpoint_table([{"path": "/a", "method": "GET"}])
    with pytest.raises(ConfigurationError):
        validate_endpoint_table([{"path": "/a", "method": "FETCH", "function": "f"}])


def test_unbuilt_function_aborts_without_partial_nodes():
    arena = _arena("f1")
    before = len(arena)
    rows = [
        {"path": "/a", "method": "GET", "function": "f1"},
        {"path": "/b", "method": "GET", "function": "ghost"},
    ]
    with pytest.raises(AssemblyError, match="ghost"):
        resolve_endpoints(rows, arena, "gateway:api", None)
    assert len(arena) == before


def test_shared_prefixes_reuse_route_nodes():
    rows = [
        EndpointDescriptor(path="/space/locations", method="GET", function="f1"),
        EndpointDescriptor(path="/space/bookings", method="GET", function="f1"),
        EndpointDescriptor(path="/space/cancel/{id}", method="POST", function="f1"),
    ]
    arena = _arena("f1")
    resolve_endpoints(rows, arena, "gateway:api", None)

    route_ids = sorted(n.id for n in arena.nodes_of_type("route"))
    assert route_ids == [
        "route:/space",
        "route:/space/bookings",
        "route:/space/cancel",
        "route:/space/cancel/{id}",
        "route:/space/locations",
    ]
    children_of_space = [e.src for e in arena.edges if e.dst == "route:/space" and e.type == "CHILD_OF"]
    assert len(children_of_space) == 3


def test_auth_requires_an_authorizer():
    rows = [{"path": "/a", "method": "GET", "function": "f1", "requires_auth": True}]
    with pytest.raises(ConfigurationError):
        resolve_endpoints(rows, _arena("f1"), "gateway:api", None)


def test_path_parameter_is_required_and_passed_through():
    rows = [
        {"path": "/space/bookings", "method": "GET", "function": "f1", "requires_auth": True},
        {"path": "/space/cancel/{id}", "method": "POST", "function": "f1", "requires_auth": True},
    ]
    bindings = resolve_endpoints(rows, _arena("f1"), "gateway:api", "authorizer:jwt")
    plain, cancel = bindings

    assert cancel.request_parameters == {
        AUTH_HEADER_PARAM: True,
        "method.request.path.id": True,
    }
    assert cancel.integration_parameters == {"integration.request.path.id": "method.request.path.id"}
    assert cancel.passthrough_behavior == "WHEN_NO_MATCH"
    assert cancel.required_path_parameters == ["id"]

    assert plain.request_parameters == {AUTH_HEADER_PARAM: True}
    assert plain.required_path_parameters == []
    assert plain.passthrough_behavior is None


def test_unknown_authorizer_fails_before_touching_the_arena():
    arena = ResourceArena()
    arena.add_node(GraphNode(id="gateway:api", type="gateway", label="api"))
    arena.add_node(GraphNode(id=function_id("f1"), type="function", label="f1"))
    rows = [
        {"path": "/open", "method": "GET", "function": "f1", "requires_auth": False},
        {"path": "/closed", "method": "GET", "function": "f1", "requires_auth": True},
    ]
    before = len(arena)

    with pytest.raises(ConfigurationError, match="Unknown authorizer"):
        resolve_endpoints(rows, arena, "gateway:api", "authorizer:jwt")

    assert len(arena) == before
    assert arena.edges == []
