from __future__ import annotations

import getpass
import json
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from gatekit.errors import ConfigurationError
from gatekit.topology.profiles import TopologyProfile

log = logging.getLogger(__name__)

ENV_PREFIX = "GATEKIT_"
DEFAULT_QA_COLLECTION = "./tests/postman/qa_collection.json"
CONTACT_DOMAIN = "nd.edu"

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    # serviceStackName -> service_stack_name, SERVICE_STACK_NAME -> service_stack_name
    if key.isupper():
        return key.lower()
    return _CAMEL.sub("_", key).lower()


class AppContext(BaseModel):
    """Everything a synth run needs to know, merged from file, env and CLI."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    stage: str = "dev"
    service_name: str = "libcal-gateway"
    service_stack_name: Optional[str] = None
    pipeline_stack_name: Optional[str] = None
    profile: TopologyProfile = TopologyProfile.FULL

    lambda_code_path: Optional[str] = None
    sentry_project: Optional[str] = None
    sentry_version: Optional[str] = None
    secrets_path: Optional[str] = None

    owner: Optional[str] = None
    contact: Optional[str] = None

    git_owner: Optional[str] = None
    git_token_path: Optional[str] = None
    service_repository: Optional[str] = None
    service_branch: str = "main"
    blueprints_repository: Optional[str] = None
    blueprints_branch: str = "main"
    sentry_token_path: Optional[str] = None
    sentry_org: Optional[str] = None
    email_receivers: list[str] = []
    slack_notify_stack_name: Optional[str] = None
    qa_collection_path: str = DEFAULT_QA_COLLECTION

    @field_validator("email_receivers", mode="before")
    @classmethod
    def _split_receivers(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [x.strip() for x in v.split(",") if x.strip()]
        return v

    @field_validator("stage")
    @classmethod
    def _stage_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("stage must not be empty")
        return v

    @property
    def resolved_service_stack_name(self) -> str:
        return self.service_stack_name or f"{self.service_name}-{self.stage}"

    @property
    def resolved_pipeline_stack_name(self) -> str:
        return self.pipeline_stack_name or f"{self.service_name}-pipeline"

    @property
    def service_configured(self) -> bool:
        return bool(self.lambda_code_path)

    def tags(self) -> dict[str, str]:
        raw = {
            "Owner": self.owner,
            "Contact": self.contact,
            "Stage": self.stage,
            "Service": self.service_name,
        }
        return {k: v for k, v in raw.items() if v}


def parse_context_pairs(pairs: list[str]) -> dict[str, str]:
    """["stage=prod", "sentryProject=x"] -> {"stage": "prod", "sentryProject": "x"}"""
    out: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"Context values must look like key=value, got: {pair!r}")
        out[key.strip()] = value.strip()
    return out


def _read_context_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"Context file not found: {path}") from None
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Context file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Context file must hold a JSON object: {path}")
    ctx = data.get("context", data)
    if not isinstance(ctx, dict):
        raise ConfigurationError(f"'context' must be a JSON object: {path}")
    return ctx


def _best_effort_git_commit(repo_path: Path) -> str | None:
    try:
        if not (repo_path / ".git").exists():
            return None
        out = subprocess.check_output(
            ["git", "-C", str(repo_path), "rev-parse", "HEAD"],
            stderr=subprocess.DEVNULL,
            text=True,
        ).strip()
        return out or None
    except (OSError, subprocess.CalledProcessError):
        return None


def load_context(
    context_file: Path | None = None,
    overrides: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> AppContext:
    """
    Merge context sources, later wins:
    defaults -> context file -> GATEKIT_* env vars -> explicit overrides.
    """
    environ = os.environ if environ is None else environ
    cwd = (cwd or Path.cwd()).resolve()

    merged: dict[str, Any] = {}
    if context_file is not None:
        merged.update({_snake(k): v for k, v in _read_context_file(context_file).items()})
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX) and len(key) > len(ENV_PREFIX):
            merged[_snake(key[len(ENV_PREFIX):])] = value
    merged.update({_snake(k): v for k, v in (overrides or {}).items()})

    unknown = sorted(set(merged) - set(AppContext.model_fields))
    if unknown:
        log.warning("ignoring unknown context keys: %s", ", ".join(unknown))

    user = _current_user()
    merged.setdefault("owner", user)
    if user:
        merged.setdefault("contact", f"{user}@{CONTACT_DOMAIN}")

    try:
        ctx = AppContext.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid context: {exc}") from exc

    if not ctx.lambda_code_path:
        sibling = cwd.parent / ctx.service_name
        if sibling.is_dir():
            code_path = sibling / "src"
            version = ctx.sentry_version or _best_effort_git_commit(sibling)
            log.info("using sibling checkout %s for function code", sibling)
            ctx = ctx.model_copy(update={"lambda_code_path": str(code_path), "sentry_version": version})

    return ctx


def _current_user() -> str | None:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None
