from __future__ import annotations


class GatekitError(Exception):
    """Base class for every error gatekit raises on purpose."""


class ConfigurationError(GatekitError):
    """Descriptor, stage plan or context is invalid. Raised before anything is rendered."""


class AssemblyError(GatekitError):
    """A topology could not be assembled (e.g. a binding points at a function that was never built)."""


class StageFailure(GatekitError):
    def __init__(self, stage: str, exit_code: int, message: str = "") -> None:
        self.stage = stage
        self.exit_code = exit_code
        super().__init__(message or f"stage {stage!r} failed with exit code {exit_code}")


class ContractTestFailure(StageFailure):
    """The contract-test collection reported failures against the deployed gateway."""
