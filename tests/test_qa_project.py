import json
import subprocess

import aws_cdk as cdk
import pytest

from gatekit.errors import ContractTestFailure
from gatekit.qa.project import QAGateConfig, QAGateProject, qa_buildspec, run_contract_tests
from gatekit.stores.parameters import InMemoryParameterStore, ParameterNotFound
from gatekit.synth import new_app, stack_template


CFG = QAGateConfig(url_parameter="/all/libcal-gateway/dev/api-url")


def test_project_reads_url_from_parameter_store(tmp_path):
    stack = cdk.Stack(new_app(str(tmp_path / "cdk.out")), "QAStack")
    QAGateProject(stack, "QAProject", config=CFG, project_name="svc-pipeline-qa")
    template = stack_template(stack)

    (project,) = [r for r in template["Resources"].values() if r["Type"] == "AWS::CodeBuild::Project"]
    props = project["Properties"]
    assert props["Name"] == "svc-pipeline-qa"
    assert props["Environment"]["Image"] == "aws/codebuild/standard:4.0"

    env = props["Environment"]["EnvironmentVariables"]
    assert {"Name": "API_URL", "Type": "PARAMETER_STORE", "Value": "/all/libcal-gateway/dev/api-url"} in env
    assert {"Name": "CI", "Type": "PLAINTEXT", "Value": "true"} in env

    spec = json.loads(props["Source"]["BuildSpec"])
    assert spec == qa_buildspec(CFG)


def test_buildspec_runs_fixed_collection_with_one_variable():
    spec = qa_buildspec(CFG)
    assert spec["phases"]["install"]["commands"][0] == "npm install -g newman"
    assert spec["phases"]["build"]["commands"][-1] == (
        "newman run ./tests/postman/qa_collection.json --env-var libcalGatewayApiUrl=$API_URL"
    )


def test_exit_zero_passes():
    seen = {}

    def runner(cmd, **kwargs):
        seen["cmd"] = cmd
        return subprocess.CompletedProcess(cmd, 0)

    store = InMemoryParameterStore({CFG.url_parameter: "https://x.test/dev/"})
    result = run_contract_tests(CFG, store, runner=runner)

    assert result.passed
    assert seen["cmd"] == [
        "newman",
        "run",
        "./tests/postman/qa_collection.json",
        "--env-var",
        "libcalGatewayApiUrl=https://x.test/dev/",
    ]
    result.raise_for_status()


def test_non_zero_exit_fails_the_gate():
    store = InMemoryParameterStore({CFG.url_parameter: "https://x.test/dev/"})
    result = run_contract_tests(CFG, store, runner=lambda cmd, **kw: subprocess.CompletedProcess(cmd, 4))

    assert not result.passed
    with pytest.raises(ContractTestFailure) as exc:
        result.raise_for_status()
    assert exc.value.exit_code == 4
    assert exc.value.stage == "QAGate"


def test_missing_runner_binary_fails_the_gate():
    def runner(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    store = InMemoryParameterStore({CFG.url_parameter: "https://x.test/dev/"})
    result = run_contract_tests(CFG, store, runner=runner)
    assert result.exit_code == 127


def test_unpublished_url_propagates():
    with pytest.raises(ParameterNotFound):
        run_contract_tests(CFG, InMemoryParameterStore(), runner=lambda *a, **k: None)
