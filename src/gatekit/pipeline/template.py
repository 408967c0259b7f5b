from __future__ import annotations

from typing import Iterable, Optional

import aws_cdk as cdk
from aws_cdk import aws_codebuild as codebuild
from aws_cdk import aws_codepipeline as codepipeline
from aws_cdk import aws_codepipeline_actions as codepipeline_actions
from aws_cdk import aws_events as events
from aws_cdk import aws_events_targets as events_targets
from aws_cdk import aws_iam as iam
from aws_cdk import aws_sns as sns
from aws_cdk import aws_sns_subscriptions as subscriptions
from constructs import Construct

from gatekit.errors import ConfigurationError
from gatekit.pipeline.stages import (
    BUILD_PACKAGE,
    SOURCE_BLUEPRINTS,
    SOURCE_SERVICE,
    PipelineSettings,
    PipelineStageSpec,
    StageKind,
    StagePlan,
)
from gatekit.qa.project import QAGateConfig, QAGateProject
from gatekit.synth import apply_tags, new_app, stack_template

# artifact ref -> CodePipeline artifact name
ARTIFACT_NAMES = {
    SOURCE_SERVICE: "AppCode",
    SOURCE_BLUEPRINTS: "InfraCode",
    BUILD_PACKAGE: "BuiltCode",
}

BUILD_IMAGE = "aws/codebuild/standard:4.0"

# the blueprints checkout provides the gatekit command for the deploy stage
DEPLOY_INSTALL_COMMANDS = ("pip install .", "npm install -g aws-cdk")


def stage_buildspec(stage: PipelineStageSpec, install: Iterable[str] = ()) -> dict:
    phases: dict = {"build": {"commands": list(stage.commands)}}
    install = list(install)
    if install:
        phases = {"install": {"commands": install}, **phases}
    spec: dict = {"version": "0.2", "phases": phases}
    if any(ref in ARTIFACT_NAMES for ref in stage.outputs):
        spec["artifacts"] = {"files": ["**/*"]}
    return spec


def _missing_source_settings(settings: PipelineSettings) -> list[str]:
    required = {
        "gitOwner": settings.git_owner,
        "gitTokenPath": settings.git_token_path,
        "serviceRepository": settings.service_repository,
        "blueprintsRepository": settings.blueprints_repository,
    }
    return [key for key, value in required.items() if not value]


class PipelineStack(cdk.Stack):
    """
    The stage plan as a CodePipeline.

    Notify is not a pipeline stage in CodePipeline terms; it becomes an event
    rule on the execution's final state (SUCCEEDED or FAILED) that publishes
    to the notification topic and, if configured, the Slack notifier's topic.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        plan: StagePlan,
        settings: PipelineSettings,
        **kwargs,
    ) -> None:
        super().__init__(
            scope,
            construct_id,
            stack_name=settings.pipeline_name,
            description=f"Delivery pipeline {settings.pipeline_name}",
            **kwargs,
        )
        missing = _missing_source_settings(settings)
        if missing:
            raise ConfigurationError("Pipeline source needs context values: " + ", ".join(missing))

        self.settings = settings
        self.artifacts = {ref: codepipeline.Artifact(name) for ref, name in ARTIFACT_NAMES.items()}
        self.projects: dict[str, codebuild.PipelineProject] = {}

        self.pipeline = codepipeline.Pipeline(
            self,
            "Pipeline",
            pipeline_name=settings.pipeline_name,
            restart_execution_on_update=False,
        )
        for spec in plan.work_stages:
            self.pipeline.add_stage(stage_name=spec.name, actions=self._actions(spec))

        notify = plan.get(StageKind.NOTIFY)
        if notify is not None:
            self._notification(notify)

        cdk.CfnOutput(self, "PipelineName", value=self.pipeline.pipeline_name)

    def _actions(self, spec: PipelineStageSpec) -> list[codepipeline.IAction]:
        s = self.settings
        if spec.kind is StageKind.SOURCE:
            token = cdk.SecretValue.secrets_manager(s.git_token_path, json_field="oauth")
            return [
                codepipeline_actions.GitHubSourceAction(
                    action_name="AppCode",
                    owner=s.git_owner,
                    repo=s.service_repository,
                    branch=s.service_branch,
                    oauth_token=token,
                    output=self.artifacts[SOURCE_SERVICE],
                ),
                codepipeline_actions.GitHubSourceAction(
                    action_name="InfraCode",
                    owner=s.git_owner,
                    repo=s.blueprints_repository,
                    branch=s.blueprints_branch,
                    oauth_token=token,
                    output=self.artifacts[SOURCE_BLUEPRINTS],
                ),
            ]

        if spec.kind is StageKind.QA_GATE:
            project: codebuild.PipelineProject = QAGateProject(
                self,
                "QAProject",
                config=QAGateConfig(url_parameter=s.url_parameter_name, collection_path=s.qa_collection_path),
                project_name=f"{s.pipeline_name}-qa",
            )
            action_name = "IntegrationTests"
        else:
            project = self._stage_project(spec)
            action_name = spec.name
        self.projects[spec.name] = project

        primary, extra = self._inputs(spec.inputs)
        return [
            codepipeline_actions.CodeBuildAction(
                action_name=action_name,
                project=project,
                input=primary,
                extra_inputs=extra or None,
                outputs=[self.artifacts[ref] for ref in sorted(spec.outputs) if ref in ARTIFACT_NAMES] or None,
            )
        ]

    def _stage_project(self, spec: PipelineStageSpec) -> codebuild.PipelineProject:
        s = self.settings
        env = {"STAGE": s.stage}
        install: tuple[str, ...] = ()
        if spec.kind is StageKind.BUILD and s.sentry_project:
            env["SENTRY_PROJECT"] = s.sentry_project
            if s.sentry_org:
                env["SENTRY_ORG"] = s.sentry_org
        if spec.kind is StageKind.DEPLOY_SERVICE:
            # read by the gatekit app inside the build container
            if s.secrets_path:
                env["GATEKIT_SECRETS_PATH"] = s.secrets_path
            if s.sentry_project:
                env["GATEKIT_SENTRY_PROJECT"] = s.sentry_project
            install = DEPLOY_INSTALL_COMMANDS

        project = codebuild.PipelineProject(
            self,
            f"{spec.name}Project",
            project_name=f"{s.pipeline_name}-{spec.name.lower()}",
            environment=codebuild.BuildEnvironment(
                build_image=codebuild.LinuxBuildImage.from_code_build_image_id(BUILD_IMAGE),
                environment_variables={
                    k: codebuild.BuildEnvironmentVariable(value=v) for k, v in sorted(env.items())
                },
            ),
            build_spec=codebuild.BuildSpec.from_object(stage_buildspec(spec, install)),
        )
        if spec.kind is StageKind.DEPLOY_SERVICE:
            # cdk deploy works through the bootstrap roles
            project.add_to_role_policy(
                iam.PolicyStatement(
                    actions=["sts:AssumeRole"],
                    resources=[f"arn:aws:iam::{self.account}:role/cdk-*"],
                )
            )
        return project

    def _inputs(self, refs: Iterable[str]) -> tuple[codepipeline.Artifact, list[codepipeline.Artifact]]:
        """The blueprints checkout is the primary source whenever a stage reads it."""
        names = sorted(ref for ref in refs if ref in ARTIFACT_NAMES)
        if SOURCE_BLUEPRINTS in names:
            names.remove(SOURCE_BLUEPRINTS)
            names.insert(0, SOURCE_BLUEPRINTS)
        artifacts = [self.artifacts[ref] for ref in names]
        return artifacts[0], artifacts[1:]

    def _notification(self, notify: PipelineStageSpec) -> None:
        s = self.settings
        topic = sns.Topic(self, "NotificationTopic")
        for receiver in s.email_receivers:
            topic.add_subscription(subscriptions.EmailSubscription(receiver))

        rule = events.Rule(
            self,
            "PipelineStatusRule",
            description=f"{notify.name}: pipeline finished ({', '.join(notify.runs_on)})",
            event_pattern=events.EventPattern(
                source=["aws.codepipeline"],
                detail_type=["CodePipeline Pipeline Execution State Change"],
                detail={
                    "pipeline": [s.pipeline_name],
                    "state": [status.upper() for status in notify.runs_on],
                },
            ),
            targets=[events_targets.SnsTopic(topic)],
        )
        if s.slack_notify_stack_name:
            slack = sns.Topic.from_topic_arn(
                self, "SlackTopic", cdk.Fn.import_value(f"{s.slack_notify_stack_name}:TopicArn")
            )
            rule.add_target(events_targets.SnsTopic(slack))


def render_pipeline_template(
    plan: StagePlan,
    settings: PipelineSettings,
    tags: Optional[dict[str, str]] = None,
    outdir: Optional[str] = None,
) -> dict:
    stack = PipelineStack(new_app(outdir), settings.pipeline_name, plan=plan, settings=settings)
    apply_tags(stack, tags or {})
    return stack_template(stack)
