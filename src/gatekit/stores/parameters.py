"""Parameter-store access for the QA gate.

Only reads happen here. The published gateway URL has exactly one writer,
the service topology itself (rendered as an SSM parameter resource).
"""

from __future__ import annotations

import os
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from gatekit.errors import GatekitError

SSM_REGION: str = os.environ.get("SSM_REGION", os.environ.get("AWS_REGION", "us-east-1"))


class ParameterNotFound(GatekitError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Parameter not found: {name}")


class ParameterStore(Protocol):
    def get(self, name: str) -> str: ...


class InMemoryParameterStore:
    def __init__(self, values: Optional[dict[str, str]] = None) -> None:
        self._values: dict[str, str] = dict(values or {})

    def get(self, name: str) -> str:
        try:
            return self._values[name]
        except KeyError:
            raise ParameterNotFound(name) from None

    def put(self, name: str, value: str) -> None:
        self._values[name] = value


def _ssm_client(region: Optional[str] = None):
    return boto3.client(
        "ssm",
        region_name=region or SSM_REGION,
        config=Config(retries={"max_attempts": 5, "mode": "standard"}),
    )


class SsmParameterStore:
    def __init__(self, client=None, region: Optional[str] = None) -> None:
        self._client = client if client is not None else _ssm_client(region)

    def get(self, name: str) -> str:
        try:
            resp = self._client.get_parameter(Name=name, WithDecryption=True)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ParameterNotFound":
                raise ParameterNotFound(name) from exc
            raise
        return resp["Parameter"]["Value"]
