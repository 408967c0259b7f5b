from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from aws_cdk import aws_codebuild as codebuild
from aws_cdk import aws_iam as iam
from constructs import Construct

from gatekit.errors import ContractTestFailure
from gatekit.stores.parameters import ParameterStore

log = logging.getLogger(__name__)

QA_STAGE_NAME = "QAGate"


@dataclass(frozen=True)
class QAGateConfig:
    url_parameter: str
    collection_path: str = "./tests/postman/qa_collection.json"
    variable_name: str = "libcalGatewayApiUrl"
    env_var: str = "API_URL"
    runner: str = "newman"
    build_image: str = "aws/codebuild/standard:4.0"
    nodejs_version: str = "12.x"


def contract_test_command(config: QAGateConfig, url: str) -> list[str]:
    return [
        config.runner,
        "run",
        config.collection_path,
        "--env-var",
        f"{config.variable_name}={url}",
    ]


def qa_buildspec(config: QAGateConfig) -> dict:
    run = " ".join(contract_test_command(config, f"${config.env_var}"))
    return {
        "version": "0.2",
        "phases": {
            "install": {
                "runtime-versions": {"nodejs": config.nodejs_version},
                "commands": [
                    f"npm install -g {config.runner}",
                    'echo "Ensure that the contract-test collection is readable"',
                    f"chmod -R 755 {Path(config.collection_path).parent.as_posix()}/*",
                ],
            },
            "build": {
                "commands": [
                    'echo "Beginning tests at `date`"',
                    run,
                ],
            },
        },
    }


class QAGateProject(codebuild.PipelineProject):
    """CodeBuild project that runs the contract tests inside the pipeline."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: QAGateConfig,
        project_name: Optional[str] = None,
        role: Optional[iam.IRole] = None,
    ) -> None:
        super().__init__(
            scope,
            construct_id,
            project_name=project_name,
            description="Runs the QA contract-test collection against the deployed gateway",
            role=role,
            environment=codebuild.BuildEnvironment(
                build_image=codebuild.LinuxBuildImage.from_code_build_image_id(config.build_image),
                environment_variables={
                    config.env_var: codebuild.BuildEnvironmentVariable(
                        value=config.url_parameter,
                        type=codebuild.BuildEnvironmentVariableType.PARAMETER_STORE,
                    ),
                    "CI": codebuild.BuildEnvironmentVariable(
                        value="true",
                        type=codebuild.BuildEnvironmentVariableType.PLAINTEXT,
                    ),
                },
            ),
            build_spec=codebuild.BuildSpec.from_object(qa_buildspec(config)),
        )
        self.config = config


@dataclass(frozen=True)
class QAGateResult:
    url: str
    exit_code: int
    command: tuple[str, ...]

    @property
    def passed(self) -> bool:
        return self.exit_code == 0

    def raise_for_status(self) -> None:
        if not self.passed:
            raise ContractTestFailure(
                QA_STAGE_NAME,
                self.exit_code,
                f"contract tests failed against {self.url} (exit code {self.exit_code})",
            )


Runner = Callable[..., subprocess.CompletedProcess]


def run_contract_tests(
    config: QAGateConfig,
    store: ParameterStore,
    runner: Runner = subprocess.run,
    cwd: Optional[Path] = None,
) -> QAGateResult:
    """
    Fetch the published URL and run the collection against it once.

    Lookup errors propagate unchanged. A missing runner binary counts as a
    failed gate (exit code 127), like a shell would report it.
    """
    url = store.get(config.url_parameter)
    cmd = contract_test_command(config, url)
    log.info("running contract tests against %s", url)
    try:
        completed = runner(cmd, cwd=str(cwd) if cwd else None, check=False)
        exit_code = completed.returncode
    except FileNotFoundError:
        log.error("contract-test runner %r not found", config.runner)
        exit_code = 127

    result = QAGateResult(url=url, exit_code=exit_code, command=tuple(cmd))
    if result.passed:
        log.info("contract tests passed")
    else:
        log.warning("contract tests failed with exit code %d", exit_code)
    return result
