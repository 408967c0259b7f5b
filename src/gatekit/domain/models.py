from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]

_MULTI_SLASH = re.compile(r"/{2,}")
_PARAM = re.compile(r"^\{([A-Za-z_][A-Za-z0-9_]*)\}$")


def normalize_path(path: str) -> str:
    p = (path or "").strip()
    if not p.startswith("/"):
        p = "/" + p
    p = _MULTI_SLASH.sub("/", p)
    if p != "/" and p.endswith("/"):
        p = p[:-1]
    return p


def path_parameters(path: str) -> list[str]:
    """`/space/cancel/{id}` -> ["id"]"""
    out: list[str] = []
    for seg in path.strip("/").split("/"):
        m = _PARAM.match(seg)
        if m:
            out.append(m.group(1))
    return out


class EndpointDescriptor(BaseModel):
    """One row of the endpoint table."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(min_length=1)
    method: HttpMethod
    function: str = Field(min_length=1)  # logical name of the backing function
    requires_auth: bool = False

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, v: object) -> object:
        return v.upper().strip() if isinstance(v, str) else v

    @field_validator("path")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return normalize_path(v)

    @property
    def key(self) -> tuple[str, str]:
        return (self.path, self.method)


class FunctionSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)     # logical name, referenced by descriptors
    handler: str = Field(min_length=1)  # module base, e.g. getSpaceLocations
    description: str = ""
    runtime: str = "nodejs12.x"
    memory_size: int = 256
    timeout_seconds: int = 30
    log_retention_days: int = 7
    environment: dict[str, str] = Field(default_factory=dict)
