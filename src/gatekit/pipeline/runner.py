from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Optional, Protocol

from botocore.exceptions import ClientError

from gatekit.errors import ContractTestFailure, GatekitError, StageFailure
from gatekit.pipeline.stages import DEPLOY_API_URL, PipelineStageSpec, StageKind, StagePlan
from gatekit.qa.project import QAGateConfig, run_contract_tests
from gatekit.stores.parameters import ParameterStore

log = logging.getLogger(__name__)


class PipelineStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class StageResult:
    stage: str
    exit_code: int
    outputs: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass
class PipelineRun:
    status: PipelineStatus
    results: list[StageResult]
    artifacts: dict[str, str]
    failure: Optional[StageFailure] = None
    notified: bool = False

    @property
    def failed_stage(self) -> str | None:
        return self.failure.stage if self.failure else None

    def raise_for_status(self) -> None:
        if self.failure is not None:
            raise self.failure


class StageExecutor(Protocol):
    def __call__(self, stage: PipelineStageSpec, inputs: Mapping[str, str]) -> StageResult: ...


Notifier = Callable[[PipelineStageSpec, PipelineRun], None]


def log_notifier(stage: PipelineStageSpec, run: PipelineRun) -> None:
    if run.status is PipelineStatus.SUCCEEDED:
        log.info("pipeline succeeded (%d stage(s))", len(run.results))
    else:
        log.warning("pipeline failed at %s: %s", run.failed_stage, run.failure)


class PipelineRunner:
    """
    Run a stage plan strictly in order.

    The first failing stage stops every later work stage. The Notify stage
    (if planned) fires on both outcomes. An executor that raises (missing
    parameter, AWS error, unrunnable command) fails its stage like a non-zero
    exit. Nothing is retried; a re-run is a new `run()` call.
    """

    def __init__(self, plan: StagePlan, executor: StageExecutor, notifier: Notifier = log_notifier) -> None:
        self.plan = plan
        self.executor = executor
        self.notifier = notifier

    def run(self) -> PipelineRun:
        artifacts: dict[str, str] = {}
        results: list[StageResult] = []
        failure: StageFailure | None = None

        for stage in self.plan.work_stages:
            inputs = {ref: artifacts[ref] for ref in sorted(stage.inputs)}
            log.info("stage %d: %s", stage.ordinal, stage.name)
            try:
                result = self.executor(stage, inputs)
            except (GatekitError, ClientError, OSError) as exc:
                results.append(StageResult(stage=stage.name, exit_code=1))
                failure = _failure_for(stage, 1, f"stage {stage.name!r} could not run: {exc}")
                failure.__cause__ = exc
                log.warning("%s", failure)
                break
            results.append(result)

            if not result.succeeded:
                failure = _failure_for(stage, result.exit_code)
                log.warning("%s", failure)
                break

            missing = sorted(set(stage.outputs) - set(result.outputs))
            if missing:
                failure = StageFailure(
                    stage.name, 1, f"stage {stage.name!r} did not produce {', '.join(missing)}"
                )
                log.warning("%s", failure)
                break

            # only declared artifacts cross stage boundaries
            for ref in stage.outputs:
                artifacts[ref] = result.outputs[ref]

        run = PipelineRun(
            status=PipelineStatus.FAILED if failure else PipelineStatus.SUCCEEDED,
            results=results,
            artifacts=artifacts,
            failure=failure,
        )

        notify = self.plan.get(StageKind.NOTIFY)
        if notify is not None and run.status.value in notify.runs_on:
            self.notifier(notify, run)
            run.notified = True
        return run


def _failure_for(stage: PipelineStageSpec, exit_code: int, message: str = "") -> StageFailure:
    if stage.kind is StageKind.QA_GATE:
        return ContractTestFailure(
            stage.name, exit_code, message or f"contract tests failed (exit code {exit_code})"
        )
    return StageFailure(stage.name, exit_code, message)


_NON_WORD = re.compile(r"[^A-Za-z0-9]+")


def artifact_env_name(ref: str) -> str:
    """deploy:api-url -> GATEKIT_ARTIFACT_DEPLOY_API_URL"""
    return "GATEKIT_ARTIFACT_" + _NON_WORD.sub("_", ref).strip("_").upper()


class LocalExecutor:
    """
    Runs stages on this machine: shell commands for build/deploy stages,
    the contract-test runner for the QA gate.
    """

    def __init__(
        self,
        store: ParameterStore,
        qa_config: QAGateConfig,
        cwd: Optional[Path] = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.store = store
        self.qa_config = qa_config
        self.cwd = cwd
        self._run = run

    def __call__(self, stage: PipelineStageSpec, inputs: Mapping[str, str]) -> StageResult:
        if stage.kind is StageKind.QA_GATE:
            cfg = QAGateConfig(
                url_parameter=inputs.get(DEPLOY_API_URL, self.qa_config.url_parameter),
                collection_path=self.qa_config.collection_path,
                variable_name=self.qa_config.variable_name,
                runner=self.qa_config.runner,
            )
            qa = run_contract_tests(cfg, self.store, runner=self._run, cwd=self.cwd)
            return StageResult(stage=stage.name, exit_code=qa.exit_code)

        env = dict(os.environ)
        env.update({artifact_env_name(ref): value for ref, value in inputs.items()})
        for command in stage.commands:
            log.debug("%s$ %s", stage.name, command)
            completed = self._run(
                command,
                shell=True,
                cwd=str(self.cwd) if self.cwd else None,
                env=env,
                check=False,
            )
            if completed.returncode != 0:
                return StageResult(stage=stage.name, exit_code=completed.returncode)
        return StageResult(stage=stage.name, exit_code=0, outputs=dict(stage.outputs))
