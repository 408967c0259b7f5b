import json
import logging
from pathlib import Path

import pytest

from gatekit.config.context import load_context, parse_context_pairs
from gatekit.errors import ConfigurationError
from gatekit.topology.profiles import TopologyProfile


def _workdir(tmp_path: Path) -> Path:
    cwd = tmp_path / "blueprints"
    cwd.mkdir(exist_ok=True)
    return cwd


def test_defaults(tmp_path: Path):
    ctx = load_context(environ={}, cwd=_workdir(tmp_path))
    assert ctx.stage == "dev"
    assert ctx.resolved_service_stack_name == "libcal-gateway-dev"
    assert ctx.resolved_pipeline_stack_name == "libcal-gateway-pipeline"
    assert ctx.profile is TopologyProfile.FULL
    assert not ctx.service_configured


def test_sources_merge_later_wins(tmp_path: Path):
    f = tmp_path / "cdk.json"
    f.write_text(
        json.dumps(
            {
                "context": {
                    "stage": "prod",
                    "serviceStackName": "from-file",
                    "emailReceivers": "a@x.test, b@x.test",
                }
            }
        ),
        encoding="utf-8",
    )
    ctx = load_context(
        f,
        overrides={"stage": "qa"},
        environ={"GATEKIT_STAGE": "test", "GATEKIT_SECRETS_PATH": "/secrets/svc"},
        cwd=_workdir(tmp_path),
    )
    assert ctx.stage == "qa"
    assert ctx.service_stack_name == "from-file"
    assert ctx.secrets_path == "/secrets/svc"
    assert ctx.email_receivers == ["a@x.test", "b@x.test"]


def test_sibling_checkout_supplies_code_path(tmp_path: Path):
    (tmp_path / "libcal-gateway" / "src").mkdir(parents=True)
    ctx = load_context(environ={}, cwd=_workdir(tmp_path))
    assert ctx.lambda_code_path == str((tmp_path / "libcal-gateway" / "src").resolve())
    assert ctx.service_configured
    assert ctx.sentry_version is None  # not a git checkout


def test_unknown_keys_are_reported(tmp_path: Path, caplog):
    with caplog.at_level(logging.WARNING):
        load_context(overrides={"stagee": "prod"}, environ={}, cwd=_workdir(tmp_path))
    assert "stagee" in caplog.text


def test_invalid_values_are_configuration_errors(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        load_context(overrides={"profile": "tiny"}, environ={}, cwd=_workdir(tmp_path))
    with pytest.raises(ConfigurationError):
        load_context(overrides={"stage": "  "}, environ={}, cwd=_workdir(tmp_path))


def test_bad_context_file(tmp_path: Path):
    f = tmp_path / "cdk.json"
    f.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_context(f, environ={}, cwd=_workdir(tmp_path))
    with pytest.raises(ConfigurationError):
        load_context(tmp_path / "missing.json", environ={}, cwd=_workdir(tmp_path))


def test_parse_context_pairs():
    assert parse_context_pairs(["stage=prod", "a=b=c"]) == {"stage": "prod", "a": "b=c"}
    with pytest.raises(ConfigurationError):
        parse_context_pairs(["novalue"])


def test_tags_skip_empty_values(tmp_path: Path):
    ctx = load_context(overrides={"owner": "me", "stage": "prod"}, environ={}, cwd=_workdir(tmp_path))
    assert ctx.tags() == {"Owner": "me", "Stage": "prod", "Service": "libcal-gateway"}


def test_owner_and_contact_default_to_current_user(tmp_path: Path, monkeypatch):
    monkeypatch.setattr("gatekit.config.context._current_user", lambda: "jdoe")
    ctx = load_context(environ={}, cwd=_workdir(tmp_path))
    assert ctx.owner == "jdoe"
    assert ctx.contact == "jdoe@nd.edu"

    explicit = load_context(overrides={"contact": "team@x.test"}, environ={}, cwd=tmp_path)
    assert explicit.contact == "team@x.test"
