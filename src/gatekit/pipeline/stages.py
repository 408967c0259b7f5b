from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

from gatekit.errors import ConfigurationError
from gatekit.qa.project import QAGateConfig, contract_test_command


class StageKind(str, Enum):
    SOURCE = "Source"
    BUILD = "Build"
    DEPLOY_SERVICE = "DeployService"
    QA_GATE = "QAGate"
    NOTIFY = "Notify"


# artifact references passed between stages
SOURCE_SERVICE = "source:service"
SOURCE_BLUEPRINTS = "source:blueprints"
BUILD_PACKAGE = "build:package"
DEPLOY_API_URL = "deploy:api-url"


@dataclass(frozen=True)
class PipelineSettings:
    pipeline_name: str
    stage: str
    service_stack_name: Optional[str]      # None -> no service deployment in this pipeline
    url_parameter_name: str
    qa_collection_path: str
    service_repository: Optional[str] = None
    service_branch: str = "main"
    blueprints_repository: Optional[str] = None
    blueprints_branch: str = "main"
    git_owner: Optional[str] = None
    git_token_path: Optional[str] = None
    build_commands: tuple[str, ...] = ("npm ci", "npm test")
    email_receivers: tuple[str, ...] = ()
    slack_notify_stack_name: Optional[str] = None
    sentry_org: Optional[str] = None
    sentry_project: Optional[str] = None
    sentry_token_path: Optional[str] = None
    secrets_path: Optional[str] = None


@dataclass(frozen=True)
class PipelineStageSpec:
    name: str
    kind: StageKind
    ordinal: int
    inputs: frozenset[str] = frozenset()
    outputs: dict[str, str] = field(default_factory=dict, compare=False)  # artifact ref -> location
    commands: tuple[str, ...] = ()
    runs_on: tuple[str, ...] = ("succeeded",)  # final pipeline statuses this stage fires on


@dataclass(frozen=True)
class StagePlan:
    stages: tuple[PipelineStageSpec, ...]
    inclusion: dict[str, bool] = field(default_factory=dict, compare=False)

    def names(self) -> list[str]:
        return [s.name for s in self.stages]

    def get(self, kind: StageKind) -> PipelineStageSpec | None:
        return next((s for s in self.stages if s.kind is kind), None)

    @property
    def work_stages(self) -> tuple[PipelineStageSpec, ...]:
        return tuple(s for s in self.stages if s.kind is not StageKind.NOTIFY)


def includes_deploy_service(settings: PipelineSettings) -> bool:
    return settings.service_stack_name is not None


def includes_qa_gate(settings: PipelineSettings) -> bool:
    # the gate needs a freshly deployed target
    return includes_deploy_service(settings)


def _always(settings: PipelineSettings) -> bool:
    return True


def _source(settings: PipelineSettings) -> tuple[frozenset[str], dict[str, str], tuple[str, ...]]:
    return frozenset(), {SOURCE_SERVICE: "AppCode", SOURCE_BLUEPRINTS: "InfraCode"}, ()


def _build(settings: PipelineSettings):
    return frozenset({SOURCE_SERVICE}), {BUILD_PACKAGE: "BuiltCode"}, settings.build_commands


def _deploy(settings: PipelineSettings):
    stack = settings.service_stack_name
    # the cdk CLI publishes the function code asset before deploying the stack;
    # outside CodeBuild the working directory is the service checkout
    app = (
        f"gatekit synth app --stack service --context stage={settings.stage} "
        f"--context serviceStackName={stack} "
        "--context lambdaCodePath=${CODEBUILD_SRC_DIR_BuiltCode:-.}/src"
    )
    commands = (f'cdk deploy {stack} --app "{app}" --require-approval never --exclusively',)
    return (
        frozenset({SOURCE_BLUEPRINTS, BUILD_PACKAGE}),
        {DEPLOY_API_URL: settings.url_parameter_name},
        commands,
    )


def _qa(settings: PipelineSettings):
    cfg = QAGateConfig(url_parameter=settings.url_parameter_name, collection_path=settings.qa_collection_path)
    return (
        frozenset({SOURCE_SERVICE, DEPLOY_API_URL}),
        {},
        (" ".join(contract_test_command(cfg, f"${cfg.env_var}")),),
    )


def _notify(settings: PipelineSettings):
    return frozenset(), {}, ()


_Predicate = Callable[[PipelineSettings], bool]

# canonical order; ordinals are assigned over the included stages only
STAGE_TABLE: tuple[tuple[StageKind, _Predicate, Callable], ...] = (
    (StageKind.SOURCE, _always, _source),
    (StageKind.BUILD, _always, _build),
    (StageKind.DEPLOY_SERVICE, includes_deploy_service, _deploy),
    (StageKind.QA_GATE, includes_qa_gate, _qa),
    (StageKind.NOTIFY, _always, _notify),
)


def build_stage_plan(settings: PipelineSettings) -> StagePlan:
    """
    Evaluate every inclusion predicate once and lay out the stage list.

    The result is validated before it is returned.
    """
    inclusion: dict[str, bool] = {}
    stages: list[PipelineStageSpec] = []
    for kind, predicate, shape in STAGE_TABLE:
        included = bool(predicate(settings))
        inclusion[kind.value] = included
        if not included:
            continue
        inputs, outputs, commands = shape(settings)
        stages.append(
            PipelineStageSpec(
                name=kind.value,
                kind=kind,
                ordinal=len(stages) + 1,
                inputs=inputs,
                outputs=outputs,
                commands=commands,
                runs_on=("succeeded", "failed") if kind is StageKind.NOTIFY else ("succeeded",),
            )
        )

    plan = StagePlan(stages=tuple(stages), inclusion=inclusion)
    validate_stage_plan(plan.stages)
    return plan


def validate_stage_plan(stages: Sequence[PipelineStageSpec]) -> None:
    """Ordinals strictly increasing; every input produced once by an earlier stage."""
    produced: dict[str, str] = {}
    last_ordinal: int | None = None
    names: set[str] = set()

    for s in stages:
        if s.name in names:
            raise ConfigurationError(f"Duplicate stage name: {s.name}")
        names.add(s.name)

        if last_ordinal is not None and s.ordinal <= last_ordinal:
            raise ConfigurationError(
                f"Stage {s.name!r} has ordinal {s.ordinal}, expected greater than {last_ordinal}"
            )
        last_ordinal = s.ordinal

        for ref in sorted(s.inputs):
            if ref not in produced:
                raise ConfigurationError(
                    f"Stage {s.name!r} consumes {ref!r} which no earlier stage produces"
                )

        for ref in sorted(s.outputs):
            if ref in produced:
                raise ConfigurationError(
                    f"Artifact {ref!r} is produced by both {produced[ref]!r} and {s.name!r}"
                )
            produced[ref] = s.name
