from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Mapping, Union

from gatekit.errors import ConfigurationError


@dataclass(frozen=True)
class Literal:
    value: str

    def render(self) -> str:
        return self.value


@dataclass(frozen=True)
class ParameterRef:
    """Parameter-store path, looked up by the provisioning engine at deploy time."""

    path: str

    def render(self) -> str:
        return "{{resolve:ssm:%s}}" % self.path


@dataclass(frozen=True)
class SecretFieldRef:
    """One JSON field of a secret-store entry."""

    secret_path: str
    field: str

    def render(self) -> str:
        return "{{resolve:secretsmanager:%s:SecretString:%s}}" % (self.secret_path, self.field)


ValueRef = Union[Literal, ParameterRef, SecretFieldRef]


def _coerce(value: ValueRef | str) -> ValueRef:
    if isinstance(value, str):
        return Literal(value)
    return value


class EnvironmentSet(Mapping[str, ValueRef]):
    """
    Immutable mapping of variable name -> value reference.

    Nothing in here is ever dereferenced; `render()` turns references into
    deferred lookups for the provisioning engine.
    """

    def __init__(self, entries: Mapping[str, ValueRef | str] | None = None) -> None:
        self._entries: dict[str, ValueRef] = {
            str(k): _coerce(v) for k, v in (entries or {}).items()
        }

    def __getitem__(self, key: str) -> ValueRef:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"EnvironmentSet({self._entries!r})"

    def overlay(self, overrides: Mapping[str, ValueRef | str]) -> "EnvironmentSet":
        merged: dict[str, ValueRef] = dict(self._entries)
        for k, v in overrides.items():
            merged[str(k)] = _coerce(v)
        return EnvironmentSet(merged)

    def render(self) -> dict[str, str]:
        return {k: v.render() for k, v in sorted(self._entries.items())}

    def references(self) -> list[ValueRef]:
        return [v for v in self._entries.values() if not isinstance(v, Literal)]


@dataclass(frozen=True)
class EnvironmentRecipe:
    """
    Named references used to compose a stage environment.

    `parameters` maps variable -> key relative to the stage parameter prefix,
    `secrets` maps variable -> JSON field inside `secrets_path`.
    """

    parameters: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict)
    literals: Mapping[str, str] = field(default_factory=dict)
    secrets_path: str | None = None


def stage_parameter_prefix(service: str, stage: str) -> str:
    return f"/all/{service}/{stage}"


def compose_environment(service: str, stage: str, recipe: EnvironmentRecipe) -> EnvironmentSet:
    prefix = stage_parameter_prefix(service, stage)
    entries: dict[str, ValueRef] = {}

    for name, key in recipe.parameters.items():
        entries[name] = ParameterRef(f"{prefix}/{key.lstrip('/')}")

    for name, value in recipe.literals.items():
        entries[name] = Literal(value)

    if recipe.secrets:
        if not recipe.secrets_path:
            raise ConfigurationError(
                "secrets_path is required when secret fields are requested: "
                + ", ".join(sorted(recipe.secrets))
            )
        for name, json_field in recipe.secrets.items():
            entries[name] = SecretFieldRef(recipe.secrets_path, json_field)

    return EnvironmentSet(entries)


def service_base_recipe(
    stage: str,
    sentry_project: str | None,
    sentry_version: str | None,
    secrets_path: str | None,
) -> EnvironmentRecipe:
    """Environment shared by every backing function of the gateway service."""
    return EnvironmentRecipe(
        parameters={
            "SENTRY_DSN": "sentry_dsn",
            "LIBCAL_API_URL": "libcal_api_url",
        },
        literals={
            "SENTRY_ENVIRONMENT": stage,
            "SENTRY_RELEASE": f"{sentry_project or ''}@{sentry_version or ''}",
        },
        secrets={
            "API_CLIENT_ID": "api_client_id",
            "API_CLIENT_SECRET": "api_client_secret",
        },
        secrets_path=secrets_path,
    )
