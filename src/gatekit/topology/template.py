from __future__ import annotations

from pathlib import Path
from typing import Optional

import aws_cdk as cdk
from aws_cdk import aws_apigateway as apigw
from aws_cdk import aws_lambda as lambda_
from aws_cdk import aws_logs as logs
from aws_cdk import aws_ssm as ssm
from constructs import Construct

from gatekit.errors import ConfigurationError
from gatekit.graph.model import GraphNode
from gatekit.routing.resolver import ResolvedBinding
from gatekit.synth import apply_tags, handle_id, new_app, stack_template
from gatekit.topology.assembler import Topology

RETENTION_DAYS = {
    1: logs.RetentionDays.ONE_DAY,
    3: logs.RetentionDays.THREE_DAYS,
    5: logs.RetentionDays.FIVE_DAYS,
    7: logs.RetentionDays.ONE_WEEK,
    14: logs.RetentionDays.TWO_WEEKS,
    30: logs.RetentionDays.ONE_MONTH,
    60: logs.RetentionDays.TWO_MONTHS,
    90: logs.RetentionDays.THREE_MONTHS,
    180: logs.RetentionDays.SIX_MONTHS,
    365: logs.RetentionDays.ONE_YEAR,
}


class ServiceStack(cdk.Stack):
    """
    The service topology as a CDK stack.

    Nodes are declared in the arena's dependency order, so every construct's
    dependencies already exist when it is created. Route nodes map onto API
    resources; the gateway handle itself maps onto the API root.
    """

    def __init__(self, scope: Construct, construct_id: str, *, topology: Topology, **kwargs) -> None:
        cfg = topology.config
        super().__init__(
            scope,
            construct_id,
            stack_name=cfg.stack_name,
            description=cfg.description or None,
            **kwargs,
        )
        self.topology = topology
        self.arena = topology.arena
        self.by_method: dict[str, ResolvedBinding] = {b.method: b for b in topology.bindings}

        self.functions: dict[str, lambda_.IFunction] = {}
        self.resources: dict[str, apigw.IResource] = {}
        self.methods: dict[str, apigw.Method] = {}
        self.api: Optional[apigw.RestApi] = None
        self.validator: Optional[apigw.RequestValidator] = None
        self.authorizer: Optional[apigw.TokenAuthorizer] = None
        self.stage: Optional[apigw.Stage] = None
        self.url: Optional[str] = None

        code_path = Path(cfg.code_path)
        if not code_path.is_dir():
            raise ConfigurationError(f"Function code path does not exist: {code_path}")
        self.code = lambda_.Code.from_asset(str(code_path))

        for handle in self.arena.topological_order():
            node = self.arena.get(handle)
            getattr(self, f"_render_{node.type}")(node)

        apply_tags(self, cfg.tags)

    # ----------------------------
    # Node renderers
    # ----------------------------

    def _render_function(self, node: GraphNode) -> None:
        p = node.props
        self.functions[node.id] = lambda_.Function(
            self,
            handle_id(node.id),
            function_name=p["function_name"],
            description=p["description"] or None,
            code=self.code,
            handler=p["handler"],
            runtime=lambda_.Runtime(p["runtime"]),
            memory_size=p["memory_size"],
            timeout=cdk.Duration.seconds(p["timeout_seconds"]),
            environment=p["environment"].render(),
        )

    def _render_log_group(self, node: GraphNode) -> None:
        days = node.props["retention_days"]
        if days not in RETENTION_DAYS:
            raise ConfigurationError(f"Unsupported log retention for {node.label}: {days} days")
        logs.LogGroup(
            self,
            handle_id(node.id),
            log_group_name=node.label,
            retention=RETENTION_DAYS[days],
        )

    def _render_gateway(self, node: GraphNode) -> None:
        cors = node.props["cors"]
        # deployed by the deployment_stage node once every method exists
        self.api = apigw.RestApi(
            self,
            "ApiGateway",
            rest_api_name=node.label,
            description=node.props["description"] or None,
            deploy=False,
            default_cors_preflight_options=apigw.CorsOptions(
                allow_origins=list(cors["allow_origins"]),
                allow_credentials=cors["allow_credentials"],
                status_code=cors["status_code"],
            ),
        )
        self.resources[node.id] = self.api.root

    def _render_validator(self, node: GraphNode) -> None:
        self.validator = self.api.add_request_validator(
            "RequestValidator",
            validate_request_parameters=node.props["validate_request_parameters"],
        )

    def _render_authorizer(self, node: GraphNode) -> None:
        p = node.props
        handler = lambda_.Function.from_function_attributes(
            self,
            "AuthorizerFunction",
            function_arn=f"arn:aws:lambda:{self.region}:{self.account}:function:{p['function_name']}",
            same_environment=True,
        )
        self.authorizer = apigw.TokenAuthorizer(
            self,
            "JwtAuthorizer",
            handler=handler,
            identity_source=p["identity_source"],
            authorizer_name=node.label,
            results_cache_ttl=cdk.Duration.seconds(p["results_cache_ttl_seconds"]),
        )

    def _render_route(self, node: GraphNode) -> None:
        parent = next(e.dst for e in self.arena.edges if e.src == node.id and e.type == "CHILD_OF")
        self.resources[node.id] = self.resources[parent].add_resource(node.props["path_part"])

    def _render_method(self, node: GraphNode) -> None:
        b = self.by_method[node.id]
        integration = apigw.LambdaIntegration(
            self.functions[b.function],
            request_parameters=dict(b.integration_parameters) or None,
            passthrough_behavior=apigw.PassthroughBehavior[b.passthrough_behavior] if b.passthrough_behavior else None,
        )
        self.methods[node.id] = self.resources[b.route].add_method(
            b.descriptor.method,
            integration,
            authorization_type=apigw.AuthorizationType.CUSTOM if b.authorizer else apigw.AuthorizationType.NONE,
            authorizer=self.authorizer if b.authorizer else None,
            request_parameters=dict(b.request_parameters) or None,
            request_validator=self.validator if b.request_parameters else None,
        )

    def _render_deployment_stage(self, node: GraphNode) -> None:
        p = node.props
        deployment = apigw.Deployment(self, "Deployment", api=self.api, description="Automatically created")
        # a changed endpoint table gets a fresh deployment
        deployment.add_to_logical_id(sorted(self.methods))
        for method in self.api.methods:
            deployment.node.add_dependency(method)

        self.stage = apigw.Stage(
            self,
            "Stage",
            deployment=deployment,
            stage_name=p["stage_name"],
            logging_level=apigw.MethodLoggingLevel[p["logging_level"]],
            metrics_enabled=p["metrics_enabled"],
        )
        self.url = self.stage.url_for_path("/")

    def _render_parameter(self, node: GraphNode) -> None:
        ssm.StringParameter(
            self,
            "ApiUrlParameter",
            parameter_name=node.props["name"],
            string_value=self.url,
        )
        cdk.CfnOutput(self, "ApiUrl", value=self.url, export_name=node.props["export_name"])
        cdk.CfnOutput(self, "ApiUrlParameterName", value=node.props["name"])


def render_service_template(topology: Topology, outdir: Optional[str] = None) -> dict:
    stack = ServiceStack(new_app(outdir), topology.config.stack_name, topology=topology)
    return stack_template(stack)
