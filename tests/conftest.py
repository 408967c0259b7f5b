from pathlib import Path

import pytest

from gatekit.domain.models import EndpointDescriptor, FunctionSpec
from gatekit.environment.composer import EnvironmentSet, ParameterRef
from gatekit.topology.assembler import AuthorizerSpec, ServiceTopologyConfig


@pytest.fixture
def code_dir(tmp_path: Path) -> Path:
    src = tmp_path / "svc" / "src"
    src.mkdir(parents=True)
    for name in ("f1", "f2", "f3"):
        (src / f"{name}.js").write_text("exports.handler = async () => ({ statusCode: 200 })\n", encoding="utf-8")
    return src


@pytest.fixture
def abc_config(code_dir: Path) -> ServiceTopologyConfig:
    """/a open, /b and /c/{id} behind the authorizer."""
    return ServiceTopologyConfig(
        service="svc",
        stage="dev",
        stack_name="svc-dev",
        code_path=str(code_dir),
        functions=(
            FunctionSpec(name="f1", handler="f1"),
            FunctionSpec(name="f2", handler="f2", environment={"ONLY_F2": "yes"}),
            FunctionSpec(name="f3", handler="f3"),
        ),
        endpoints=(
            EndpointDescriptor(path="/a", method="GET", function="f1", requires_auth=False),
            EndpointDescriptor(path="/b", method="GET", function="f2", requires_auth=True),
            EndpointDescriptor(path="/c/{id}", method="POST", function="f3", requires_auth=True),
        ),
        environment=EnvironmentSet({"STAGE": "dev", "DSN": ParameterRef("/all/svc/dev/dsn")}),
        description="test service",
        authorizer=AuthorizerSpec(function_name="lambda-auth-dev"),
        tags={"Owner": "tester", "Stage": "dev"},
    )
