from __future__ import annotations

import logging
from typing import Optional

import aws_cdk as cdk

from gatekit.config.context import AppContext
from gatekit.environment.composer import compose_environment, service_base_recipe, stage_parameter_prefix
from gatekit.errors import ConfigurationError
from gatekit.pipeline.stages import PipelineSettings, StagePlan, build_stage_plan
from gatekit.pipeline.template import PipelineStack
from gatekit.qa.project import QAGateConfig
from gatekit.synth import apply_tags, new_app
from gatekit.topology.assembler import AuthorizerSpec, ServiceTopologyConfig, Topology, TopologyAssembler
from gatekit.topology.profiles import endpoints_for, functions_for
from gatekit.topology.template import ServiceStack

log = logging.getLogger(__name__)


def url_parameter_name(ctx: AppContext) -> str:
    return f"{stage_parameter_prefix(ctx.service_name, ctx.stage)}/api-url"


def service_config(ctx: AppContext) -> ServiceTopologyConfig:
    if not ctx.service_configured:
        raise ConfigurationError(
            "No function code path configured (set lambdaCodePath or check out the service next to this repo)"
        )
    environment = compose_environment(
        ctx.service_name,
        ctx.stage,
        service_base_recipe(ctx.stage, ctx.sentry_project, ctx.sentry_version, ctx.secrets_path),
    )
    return ServiceTopologyConfig(
        service=ctx.service_name,
        stage=ctx.stage,
        stack_name=ctx.resolved_service_stack_name,
        code_path=ctx.lambda_code_path or "",
        functions=functions_for(ctx.profile),
        endpoints=endpoints_for(ctx.profile),
        environment=environment,
        description=f"API service that stands between other apps/services and LibCal's APIs ({ctx.profile.value}).",
        authorizer=AuthorizerSpec(function_name=f"lambda-auth-{ctx.stage}"),
        tags=ctx.tags(),
    )


def build_service_topology(ctx: AppContext) -> Topology:
    return TopologyAssembler(service_config(ctx)).assemble()


def pipeline_settings(ctx: AppContext) -> PipelineSettings:
    return PipelineSettings(
        pipeline_name=ctx.resolved_pipeline_stack_name,
        stage=ctx.stage,
        service_stack_name=ctx.resolved_service_stack_name if ctx.service_configured else None,
        url_parameter_name=url_parameter_name(ctx),
        qa_collection_path=ctx.qa_collection_path,
        service_repository=ctx.service_repository,
        service_branch=ctx.service_branch,
        blueprints_repository=ctx.blueprints_repository,
        blueprints_branch=ctx.blueprints_branch,
        git_owner=ctx.git_owner,
        git_token_path=ctx.git_token_path,
        email_receivers=tuple(ctx.email_receivers),
        slack_notify_stack_name=ctx.slack_notify_stack_name,
        sentry_org=ctx.sentry_org,
        sentry_project=ctx.sentry_project,
        sentry_token_path=ctx.sentry_token_path,
        secrets_path=ctx.secrets_path,
    )


def build_pipeline_plan(ctx: AppContext) -> StagePlan:
    plan = build_stage_plan(pipeline_settings(ctx))
    if not ctx.service_configured:
        log.info("no service stack configured; pipeline has no DeployService or QAGate stage")
    return plan


def qa_config(ctx: AppContext) -> QAGateConfig:
    return QAGateConfig(url_parameter=url_parameter_name(ctx), collection_path=ctx.qa_collection_path)


SERVICE_STACK = "service"
PIPELINE_STACK = "pipeline"


def build_app(
    ctx: AppContext,
    stacks: tuple[str, ...] = (SERVICE_STACK, PIPELINE_STACK),
    outdir: Optional[str] = None,
) -> cdk.App:
    """
    The CDK app the cdk CLI deploys (`cdk deploy --app "gatekit synth app ..."`).

    The service stack is left out when no function code is configured, the
    same signal that drops DeployService from the pipeline.
    """
    unknown = sorted(set(stacks) - {SERVICE_STACK, PIPELINE_STACK})
    if unknown:
        raise ConfigurationError(f"Unknown stack(s): {', '.join(unknown)}")

    app = new_app(outdir)
    if SERVICE_STACK in stacks:
        if ctx.service_configured:
            topology = build_service_topology(ctx)
            ServiceStack(app, topology.config.stack_name, topology=topology)
        else:
            log.info("no function code configured; skipping the service stack")
    if PIPELINE_STACK in stacks:
        settings = pipeline_settings(ctx)
        pipeline = PipelineStack(app, settings.pipeline_name, plan=build_stage_plan(settings), settings=settings)
        apply_tags(pipeline, ctx.tags())
    return app
