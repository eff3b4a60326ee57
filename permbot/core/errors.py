"""Error taxonomy shared by the compiler, the policy source and the agent."""

from __future__ import annotations

from typing import Optional


class PermbotError(Exception):
    """Base class for recoverable errors (bad input, missing source, failed apply)."""


class ConfigDecodeError(PermbotError):
    """The policy config could not be decoded or failed validation."""


class NamespaceNotFound(PermbotError):
    def __init__(self, namespace: str) -> None:
        super().__init__(f"no project defined for namespace {namespace!r}")
        self.namespace = namespace


class SourceError(PermbotError):
    """Fetch-time failure of the live policy source."""


class SourceUnavailable(SourceError):
    pass


class SourceEmpty(SourceError):
    pass


class SourceInvalid(SourceError, ConfigDecodeError):
    pass


class SourceDeleted(SourceError):
    pass


class ApplyError(PermbotError):
    """A single upsert against the cluster failed."""

    def __init__(self, kind: str, name: str, namespace: Optional[str] = None, cause: Optional[BaseException] = None):
        where = f"{namespace}/{name}" if namespace else name
        msg = f"unable to apply {kind} {where}"
        if cause is not None:
            msg = f"{msg}: {cause}"
        super().__init__(msg)
        self.kind = kind
        self.name = name
        self.namespace = namespace
        self.cause = cause


class InvariantViolation(AssertionError):
    """
    Internal defect in the compiler.

    Not a PermbotError: valid input never produces it, and callers must not absorb it as an
    input or apply error.
    """
