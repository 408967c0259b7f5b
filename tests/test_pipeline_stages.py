from dataclasses import replace

import pytest

from gatekit.errors import ConfigurationError
from gatekit.pipeline.stages import (
    DEPLOY_API_URL,
    PipelineSettings,
    PipelineStageSpec,
    StageKind,
    build_stage_plan,
    includes_qa_gate,
    validate_stage_plan,
)


def _settings(**kw) -> PipelineSettings:
    base = PipelineSettings(
        pipeline_name="svc-pipeline",
        stage="dev",
        service_stack_name="svc-dev",
        url_parameter_name="/all/svc/dev/api-url",
        qa_collection_path="./tests/postman/qa_collection.json",
    )
    return replace(base, **kw)


def test_full_plan_order_and_ordinals():
    plan = build_stage_plan(_settings())
    assert plan.names() == ["Source", "Build", "DeployService", "QAGate", "Notify"]
    assert [s.ordinal for s in plan.stages] == [1, 2, 3, 4, 5]


def test_no_deploy_means_no_qa_gate():
    settings = _settings(service_stack_name=None)
    plan = build_stage_plan(settings)

    assert plan.names() == ["Source", "Build", "Notify"]
    assert plan.get(StageKind.QA_GATE) is None
    assert plan.inclusion == {
        "Source": True,
        "Build": True,
        "DeployService": False,
        "QAGate": False,
        "Notify": True,
    }
    assert includes_qa_gate(settings) is False


def test_qa_gate_follows_deploy_and_consumes_its_url():
    plan = build_stage_plan(_settings())
    names = plan.names()
    assert names.index("QAGate") == names.index("DeployService") + 1

    deploy = plan.get(StageKind.DEPLOY_SERVICE)
    qa = plan.get(StageKind.QA_GATE)
    assert deploy.outputs[DEPLOY_API_URL] == "/all/svc/dev/api-url"
    assert DEPLOY_API_URL in qa.inputs
    assert qa.commands == (
        "newman run ./tests/postman/qa_collection.json --env-var libcalGatewayApiUrl=$API_URL",
    )


def test_notify_runs_on_both_outcomes():
    plan = build_stage_plan(_settings())
    notify = plan.get(StageKind.NOTIFY)
    assert notify.runs_on == ("succeeded", "failed")
    assert plan.get(StageKind.BUILD).runs_on == ("succeeded",)


def test_validate_rejects_non_increasing_ordinals():
    stages = [
        PipelineStageSpec(name="A", kind=StageKind.SOURCE, ordinal=2),
        PipelineStageSpec(name="B", kind=StageKind.BUILD, ordinal=2),
    ]
    with pytest.raises(ConfigurationError, match="ordinal"):
        validate_stage_plan(stages)


def test_validate_rejects_forward_references():
    stages = [
        PipelineStageSpec(name="QA", kind=StageKind.QA_GATE, ordinal=1, inputs=frozenset({"deploy:api-url"})),
        PipelineStageSpec(
            name="Deploy", kind=StageKind.DEPLOY_SERVICE, ordinal=2, outputs={"deploy:api-url": "/p"}
        ),
    ]
    with pytest.raises(ConfigurationError, match="no earlier stage"):
        validate_stage_plan(stages)


def test_validate_rejects_two_writers_of_one_artifact():
    stages = [
        PipelineStageSpec(name="A", kind=StageKind.BUILD, ordinal=1, outputs={"x": "1"}),
        PipelineStageSpec(name="B", kind=StageKind.DEPLOY_SERVICE, ordinal=2, outputs={"x": "2"}),
    ]
    with pytest.raises(ConfigurationError, match="produced by both"):
        validate_stage_plan(stages)


def test_deploy_stage_hands_the_stack_to_the_cdk_cli():
    (command,) = build_stage_plan(_settings()).get(StageKind.DEPLOY_SERVICE).commands

    assert command.startswith("cdk deploy svc-dev ")
    assert '--app "gatekit synth app --stack service ' in command
    assert "--context serviceStackName=svc-dev" in command
    assert "--context lambdaCodePath=${CODEBUILD_SRC_DIR_BuiltCode:-.}/src" in command
    # no parameter overrides; the code asset is published by the cli
    assert "--parameter-overrides" not in command
