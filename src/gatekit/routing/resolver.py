from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Union

from pydantic import ValidationError

from gatekit.domain.models import EndpointDescriptor, path_parameters
from gatekit.errors import AssemblyError, ConfigurationError
from gatekit.graph.model import GraphNode, ResourceArena

log = logging.getLogger(__name__)

AUTH_HEADER_PARAM = "method.request.header.Authorization"
PASSTHROUGH_WHEN_NO_MATCH = "WHEN_NO_MATCH"

DescriptorRow = Union[EndpointDescriptor, Mapping[str, Any]]


@dataclass(frozen=True)
class ResolvedBinding:
    descriptor: EndpointDescriptor
    route: str                  # handle of the route node for descriptor.path
    method: str                 # handle of the method node
    function: str               # handle of the backing function node
    authorizer: str | None      # handle of the shared authorizer, if any
    request_parameters: dict[str, bool] = field(default_factory=dict, compare=False)
    integration_parameters: dict[str, str] = field(default_factory=dict, compare=False)
    passthrough_behavior: str | None = None

    @property
    def required_path_parameters(self) -> list[str]:
        prefix = "method.request.path."
        return sorted(k[len(prefix):] for k, v in self.request_parameters.items() if v and k.startswith(prefix))


def route_id(path: str) -> str:
    return f"route:{path}"


def method_id(method: str, path: str) -> str:
    return f"method:{method.upper()} {path}"


def function_id(name: str) -> str:
    return f"function:{name}"


def _coerce_descriptor(index: int, row: DescriptorRow) -> EndpointDescriptor:
    if isinstance(row, EndpointDescriptor):
        return row
    try:
        return EndpointDescriptor.model_validate(dict(row))
    except ValidationError as exc:
        missing = [".".join(str(p) for p in e["loc"]) for e in exc.errors()]
        raise ConfigurationError(
            f"Endpoint #{index} is invalid ({', '.join(missing)}): {dict(row)!r}"
        ) from exc


def validate_endpoint_table(rows: Iterable[DescriptorRow]) -> dict[tuple[str, str], EndpointDescriptor]:
    """
    Single validation pass over the table.

    Returns an insertion-ordered lookup keyed by (path, method); raises
    ConfigurationError on the first malformed row or duplicate key.
    """
    table: dict[tuple[str, str], EndpointDescriptor] = {}
    for i, row in enumerate(rows):
        d = _coerce_descriptor(i, row)
        if d.key in table:
            raise ConfigurationError(f"Duplicate endpoint: {d.method} {d.path}")
        table[d.key] = d
    return table


def _ensure_route(arena: ResourceArena, gateway: str, path: str) -> str:
    """Create (or reuse) one route node per path prefix and return the leaf."""
    parent = gateway
    current = ""
    for seg in path.strip("/").split("/"):
        if not seg:
            continue
        current = f"{current}/{seg}"
        rid = route_id(current)
        if rid not in arena:
            arena.add_node(GraphNode(id=rid, type="route", label=current, props={"path_part": seg}))
            arena.add_edge(rid, parent, "CHILD_OF")
            log.debug("route node %s", current)
        parent = rid
    return parent


def resolve_endpoints(
    rows: Iterable[DescriptorRow],
    arena: ResourceArena,
    gateway: str,
    authorizer: str | None,
) -> list[ResolvedBinding]:
    """
    Turn the endpoint table into bindings, in input order.

    Validation runs to completion before the arena is touched, so a bad
    table leaves no nodes behind. Functions referenced by descriptors must
    already be declared in the arena.
    """
    table = validate_endpoint_table(rows)

    if any(d.requires_auth for d in table.values()) and authorizer is None:
        raise ConfigurationError("Endpoints require auth but no authorizer was provided")
    if gateway not in arena:
        raise ConfigurationError(f"Unknown gateway: {gateway}")
    if authorizer is not None and authorizer not in arena:
        raise ConfigurationError(f"Unknown authorizer: {authorizer}")
    missing = sorted({d.function for d in table.values() if function_id(d.function) not in arena})
    if missing:
        raise AssemblyError("Backing function(s) not built: " + ", ".join(missing))

    bindings: list[ResolvedBinding] = []
    for d in table.values():
        route = _ensure_route(arena, gateway, d.path)
        fn = function_id(d.function)

        request_parameters: dict[str, bool] = {}
        integration_parameters: dict[str, str] = {}
        passthrough: str | None = None
        bound_authorizer: str | None = None

        if d.requires_auth:
            bound_authorizer = authorizer
            request_parameters[AUTH_HEADER_PARAM] = True

        for name in path_parameters(d.path):
            request_parameters[f"method.request.path.{name}"] = True
            integration_parameters[f"integration.request.path.{name}"] = f"method.request.path.{name}"
            passthrough = PASSTHROUGH_WHEN_NO_MATCH

        mid = arena.add_node(
            GraphNode(
                id=method_id(d.method, d.path),
                type="method",
                label=f"{d.method} {d.path}",
                props={"http_method": d.method},
            )
        )
        arena.add_edge(mid, route, "ON")
        arena.add_edge(mid, fn, "INVOKES")
        if bound_authorizer is not None:
            arena.add_edge(mid, bound_authorizer, "AUTHORIZED_BY")

        bindings.append(
            ResolvedBinding(
                descriptor=d,
                route=route,
                method=mid,
                function=fn,
                authorizer=bound_authorizer,
                request_parameters=request_parameters,
                integration_parameters=integration_parameters,
                passthrough_behavior=passthrough,
            )
        )

    log.info("resolved %d endpoint(s)", len(bindings))
    return bindings
