"""Provider lookup protocol and secrets error taxonomy.

This module defines the narrow contract every provider lookup follows and
the exceptions raised by the secrets subsystem. Audit findings and
resolution warnings are structured results, not exceptions, and live in
``latchkey.secrets.types``.
"""

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from latchkey.secrets.types import ResolutionFailure
from latchkey.utils.exceptions import LatchkeyError


@runtime_checkable
class ProviderLookup(Protocol):
    """Protocol for provider lookup implementations.

    A lookup turns a secret identifier into a value. It never caches and
    never writes.
    """

    async def lookup(self, secret_id: str) -> str | None:
        """Look up a secret value.

        Args:
            secret_id: Identifier understood by this provider

        Returns:
            The value, or None / empty string if the provider has no value

        Raises:
            ProviderLookupError: If the provider cannot answer at all
        """
        ...

    async def close(self) -> None:
        """Release any resources held by the lookup."""
        ...


class SecretsError(LatchkeyError):
    """Base exception for secrets-related errors."""

    def to_dict(self) -> dict[str, Any]:
        """Structured form for machine-readable output."""
        return {"type": type(self).__name__, "message": str(self)}


class ProviderLookupError(SecretsError):
    """Raised when a provider cannot answer a lookup."""

    def __init__(self, alias: str, message: str, cause: Exception | None = None):
        self.alias = alias
        self.cause = cause
        super().__init__(f"Provider '{alias}' lookup failed: {message}")


class AliasConflict(SecretsError):
    """Raised when two providers share an alias."""

    def __init__(self, alias: str):
        self.alias = alias
        super().__init__(f"Provider alias already registered: {alias}")


class _FailureCarrier(SecretsError):
    """Error that carries per-field hard failures."""

    def __init__(self, message: str, failures: Sequence[ResolutionFailure] = ()):
        self.failures = list(failures)
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["failures"] = [failure.to_dict() for failure in self.failures]
        return data


class UnresolvedReference(_FailureCarrier):
    """Raised when one or more references hard-fail resolution.

    Blocks reload and apply.
    """

    def __init__(self, failures: Sequence[ResolutionFailure]):
        paths = ", ".join(sorted({failure.field_path for failure in failures}))
        super().__init__(f"Unresolved secret references: {paths}", failures)


class PlanValidationFailure(_FailureCarrier):
    """Raised when a plan is invalid or its preflight found problems."""

    pass


class ApplyError(SecretsError):
    """Raised when committing a plan fails.

    Attributes:
        completed_steps: Steps that were written before the failure
        failed_step: The step that failed
        restored: Whether the in-memory configuration was restored
    """

    def __init__(
        self,
        message: str,
        *,
        completed_steps: Sequence[str] = (),
        failed_step: str | None = None,
        restored: bool = False,
        cause: Exception | None = None,
    ):
        self.completed_steps = list(completed_steps)
        self.failed_step = failed_step
        self.restored = restored
        self.cause = cause
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "completedSteps": self.completed_steps,
                "failedStep": self.failed_step,
                "restoredInMemory": self.restored,
            }
        )
        return data


class ApplyPartialFailure(ApplyError):
    """Raised when a commit was interrupted after some writes succeeded.

    Only the in-memory configuration is restored. The on-disk configuration
    may match neither the pre-apply nor the post-apply state; run an audit
    to learn the actual state.
    """

    def __init__(
        self,
        *,
        completed_steps: Sequence[str],
        failed_step: str,
        restored: bool,
        cause: Exception | None = None,
    ):
        restore_note = (
            "in-memory configuration restored"
            if restored
            else "in-memory configuration could not be restored"
        )
        super().__init__(
            f"Apply interrupted at '{failed_step}' after {len(completed_steps)} "
            f"completed step(s); {restore_note}; on-disk state is unknown, "
            "re-run 'latchkey secrets audit' to confirm it",
            completed_steps=completed_steps,
            failed_step=failed_step,
            restored=restored,
            cause=cause,
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["onDiskState"] = "unknown"
        return data


class ApplyTimeout(ApplyError):
    """Raised when apply timed out before any write began."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Apply timed out after {timeout}s before writing; nothing was changed")


class PlanFileError(SecretsError):
    """Raised when a plan file cannot be written or read."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Plan file {path}: {message}")
