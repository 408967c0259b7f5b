from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from gatekit.domain.models import EndpointDescriptor, FunctionSpec
from gatekit.environment.composer import EnvironmentSet, stage_parameter_prefix
from gatekit.errors import AssemblyError, GatekitError
from gatekit.graph.model import GraphNode, ResourceArena
from gatekit.routing.resolver import (
    DescriptorRow,
    ResolvedBinding,
    function_id,
    resolve_endpoints,
    validate_endpoint_table,
)

log = logging.getLogger(__name__)

GATEWAY_ID = "gateway:api"
VALIDATOR_ID = "validator:request-parameters"
AUTHORIZER_ID = "authorizer:jwt"
DEPLOYMENT_STAGE_ID = "deployment_stage:api"


@dataclass(frozen=True)
class GatewayPolicy:
    allow_origins: tuple[str, ...] = ("*",)
    allow_credentials: bool = False
    preflight_status: int = 200
    validate_request_parameters: bool = True
    logging_level: str = "ERROR"
    metrics_enabled: bool = True


@dataclass(frozen=True)
class AuthorizerSpec:
    function_name: str  # existing function, referenced by ARN
    name: str = "jwt"
    identity_source: str = "method.request.header.Authorization"
    results_cache_ttl_seconds: int = 300


@dataclass(frozen=True)
class ServiceTopologyConfig:
    service: str
    stage: str
    stack_name: str
    code_path: str
    functions: Sequence[FunctionSpec]
    endpoints: Sequence[DescriptorRow]
    environment: EnvironmentSet
    description: str = ""
    authorizer: AuthorizerSpec | None = None
    policy: GatewayPolicy = GatewayPolicy()
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def url_parameter_name(self) -> str:
        return f"{stage_parameter_prefix(self.service, self.stage)}/api-url"

    @property
    def url_export_name(self) -> str:
        return f"{self.stack_name}-api-url"


@dataclass
class Topology:
    config: ServiceTopologyConfig
    arena: ResourceArena
    bindings: list[ResolvedBinding]
    environments: dict[str, EnvironmentSet]
    gateway: str
    validator: str
    deployment_stage: str
    url_parameter: str
    authorizer: str | None = None

    def binding_for(self, path: str, method: str) -> ResolvedBinding:
        for b in self.bindings:
            if b.descriptor.key == (path, method.upper()):
                return b
        raise KeyError(f"{method.upper()} {path}")


class TopologyAssembler:
    """
    Compose functions, the shared authorizer, the gateway and the endpoint
    bindings into one Topology.

    `assemble()` either returns a complete topology or raises; the arena it
    builds is discarded on failure, so nothing partial is ever published.
    """

    def __init__(self, config: ServiceTopologyConfig) -> None:
        self.config = config

    def assemble(self) -> Topology:
        cfg = self.config
        table = validate_endpoint_table(cfg.endpoints)
        arena = ResourceArena()

        environments = self._declare_functions(arena, cfg.functions)
        self._check_bindings_have_functions(table.values(), environments)

        gateway = arena.add_node(
            GraphNode(
                id=GATEWAY_ID,
                type="gateway",
                label=cfg.stack_name,
                props={
                    "description": cfg.description,
                    "cors": {
                        "allow_origins": list(cfg.policy.allow_origins),
                        "allow_credentials": cfg.policy.allow_credentials,
                        "status_code": cfg.policy.preflight_status,
                    },
                },
            )
        )
        validator = arena.add_node(
            GraphNode(
                id=VALIDATOR_ID,
                type="validator",
                label="RequestValidator",
                props={"validate_request_parameters": cfg.policy.validate_request_parameters},
            )
        )
        arena.add_edge(validator, gateway, "ATTACHED_TO")

        authorizer = None
        if any(d.requires_auth for d in table.values()):
            authorizer = self._declare_authorizer(arena, gateway)

        bindings = resolve_endpoints(table.values(), arena, gateway, authorizer)
        for b in bindings:
            if b.request_parameters:
                arena.add_edge(b.method, validator, "VALIDATED_BY")

        deployment_stage = arena.add_node(
            GraphNode(
                id=DEPLOYMENT_STAGE_ID,
                type="deployment_stage",
                label=cfg.stage,
                props={
                    "stage_name": cfg.stage,
                    "logging_level": cfg.policy.logging_level,
                    "metrics_enabled": cfg.policy.metrics_enabled,
                },
            )
        )
        arena.add_edge(deployment_stage, gateway, "DEPLOYS")
        for b in bindings:
            arena.add_edge(deployment_stage, b.method, "DEPLOYS")

        url_parameter = arena.add_node(
            GraphNode(
                id=f"parameter:{cfg.url_parameter_name}",
                type="parameter",
                label=cfg.url_parameter_name,
                props={"name": cfg.url_parameter_name, "export_name": cfg.url_export_name},
            )
        )
        arena.add_edge(url_parameter, deployment_stage, "PUBLISHES")

        # provisioning engine contract: acyclic graph
        arena.topological_order()

        log.info(
            "assembled %s: %d function(s), %d binding(s), authorizer=%s",
            cfg.stack_name,
            len(environments),
            len(bindings),
            "yes" if authorizer else "no",
        )
        return Topology(
            config=cfg,
            arena=arena,
            bindings=bindings,
            environments=environments,
            gateway=gateway,
            validator=validator,
            deployment_stage=deployment_stage,
            url_parameter=url_parameter,
            authorizer=authorizer,
        )

    def _declare_functions(
        self, arena: ResourceArena, functions: Iterable[FunctionSpec]
    ) -> dict[str, EnvironmentSet]:
        cfg = self.config
        environments: dict[str, EnvironmentSet] = {}
        for spec in functions:
            try:
                if not cfg.code_path:
                    raise AssemblyError("no code path configured")
                env = cfg.environment.overlay(spec.environment)
                fid = arena.add_node(
                    GraphNode(
                        id=function_id(spec.name),
                        type="function",
                        label=spec.name,
                        props={
                            "function_name": f"{cfg.stack_name}-{spec.handler}",
                            "handler": f"{spec.handler}.handler",
                            "description": spec.description,
                            "runtime": spec.runtime,
                            "memory_size": spec.memory_size,
                            "timeout_seconds": spec.timeout_seconds,
                            "code_path": cfg.code_path,
                            "environment": env,
                        },
                    )
                )
                lid = arena.add_node(
                    GraphNode(
                        id=f"log_group:{spec.name}",
                        type="log_group",
                        label=f"/aws/lambda/{cfg.stack_name}-{spec.handler}",
                        props={"retention_days": spec.log_retention_days},
                    )
                )
                arena.add_edge(lid, fid, "LOGS_FOR")
            except GatekitError as exc:
                raise AssemblyError(f"Function {spec.name!r} failed to build: {exc}") from exc
            environments[spec.name] = env
            log.debug("declared function %s", spec.name)
        return environments

    @staticmethod
    def _check_bindings_have_functions(
        descriptors: Iterable[EndpointDescriptor], environments: dict[str, EnvironmentSet]
    ) -> None:
        missing = sorted({d.function for d in descriptors if d.function not in environments})
        if missing:
            raise AssemblyError("Endpoints reference functions that were not built: " + ", ".join(missing))

    def _declare_authorizer(self, arena: ResourceArena, gateway: str) -> str:
        spec = self.config.authorizer
        if spec is None:
            raise AssemblyError("Endpoints require auth but no authorizer is configured")
        aid = arena.add_node(
            GraphNode(
                id=AUTHORIZER_ID,
                type="authorizer",
                label=spec.name,
                props={
                    "function_name": spec.function_name,
                    "identity_source": spec.identity_source,
                    "results_cache_ttl_seconds": spec.results_cache_ttl_seconds,
                },
            )
        )
        arena.add_edge(aid, gateway, "ATTACHED_TO")
        return aid
