"""Helpers shared by the service and pipeline stacks."""

from __future__ import annotations

import re
from typing import Mapping, Optional

import aws_cdk as cdk
from constructs import IConstruct

_SAFE = re.compile(r"[^A-Za-z0-9]+")


def handle_id(handle: str) -> str:
    """
    Construct id for an arena handle.

    function:spaceLocations -> FunctionSpaceLocations
    """
    words = [w for w in _SAFE.split(handle) if w]
    return "".join(w[:1].upper() + w[1:] for w in words)[:200]


def new_app(outdir: Optional[str] = None) -> cdk.App:
    # without outdir the app honours $CDK_OUTDIR (set by the cdk CLI) or a temp dir
    return cdk.App(outdir=outdir) if outdir else cdk.App()


def apply_tags(scope: IConstruct, tags: Mapping[str, str]) -> None:
    for key, value in sorted(tags.items()):
        cdk.Tags.of(scope).add(key, value)


def stack_template(stack: cdk.Stack) -> dict:
    """Synthesize the stack's app and return the stack's CloudFormation template."""
    assembly = cdk.Stage.of(stack).synth()
    return assembly.get_stack_artifact(stack.artifact_id).template
