"""Secret reference types and data structures.

This module defines the typed data structures shared by the resolver,
snapshot manager, audit scanner and plan builder.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator


ALIAS_PATTERN = re.compile(r"^[a-z][a-z0-9_-]{0,63}$")

REF_KEYS = frozenset({"source", "provider", "id"})


class SecretSource(str, Enum):
    """Where a secret reference takes its value from."""

    ENV = "env"
    FILE = "file"
    PROVIDER = "provider"


class ProviderKind(str, Enum):
    """Kinds of provider lookups that can be registered."""

    ENV = "env"
    FILE = "file"
    EXEC = "exec"


class SecretRef(BaseModel):
    """Symbolic pointer to a secret value.

    A reference names the source and an identifier, never the value
    itself. References are immutable and compare structurally.

    Attributes:
        source: Source of the value (env, file, provider)
        provider: Optional provider alias; required for ``provider`` refs
        id: Identifier understood by the provider (env var, key, path)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: SecretSource
    provider: str | None = None
    id: str = Field(..., min_length=1)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Reject identifiers with surrounding whitespace."""
        if v != v.strip():
            raise ValueError("Secret id cannot have leading or trailing whitespace")
        return v

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str | None) -> str | None:
        """Validate provider alias format if provided."""
        if v is not None and not ALIAS_PATTERN.match(v):
            raise ValueError(
                "Provider alias must start with a lowercase letter and contain only "
                "lowercase alphanumerics, '-' or '_'"
            )
        return v

    @model_validator(mode="after")
    def validate_provider_required(self) -> "SecretRef":
        """Provider-sourced references must name their provider."""
        if self.source == SecretSource.PROVIDER and self.provider is None:
            raise ValueError("provider alias required when source is 'provider'")
        return self

    def to_config(self) -> dict[str, str]:
        """Render the reference as it is stored in a configuration document."""
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def parse(cls, text: str) -> "SecretRef":
        """Parse the short form ``source[@provider]:id``.

        Examples: ``env:OPENAI_API_KEY``, ``file@keys:/openai/apiKey``,
        ``provider@vault:kv/openai``.

        Raises:
            ValueError: If the text is malformed (ValidationError included)
        """
        head, sep, secret_id = text.strip().partition(":")
        if not sep:
            raise ValueError("expected 'source[@provider]:id'")
        source, _, provider = head.partition("@")
        return cls(source=source, provider=provider or None, id=secret_id)

    def __str__(self) -> str:
        if self.provider:
            return f"{self.source.value}@{self.provider}:{self.id}"
        return f"{self.source.value}:{self.id}"


class ProviderConfig(BaseModel):
    """A provider registered under ``secrets.providers``.

    Attributes:
        alias: Unique alias referenced by ``SecretRef.provider``
        kind: Provider kind
        metadata: Kind-specific connection metadata
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    alias: str
    kind: ProviderKind
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("alias")
    @classmethod
    def validate_alias(cls, v: str) -> str:
        """Validate alias format."""
        if not ALIAS_PATTERN.match(v):
            raise ValueError(
                "Provider alias must start with a lowercase letter and contain only "
                "lowercase alphanumerics, '-' or '_'"
            )
        return v

    @model_validator(mode="after")
    def validate_metadata(self) -> "ProviderConfig":
        """Check the metadata each kind needs to connect."""
        if self.kind == ProviderKind.FILE:
            if not isinstance(self.metadata.get("path"), str) or not self.metadata["path"]:
                raise ValueError("file provider requires a 'path'")
            mode = self.metadata.get("mode", "json")
            if mode not in ("json", "singleValue"):
                raise ValueError("file provider 'mode' must be 'json' or 'singleValue'")
        elif self.kind == ProviderKind.EXEC:
            command = self.metadata.get("command")
            if (
                not isinstance(command, list)
                or not command
                or not all(isinstance(part, str) for part in command)
            ):
                raise ValueError("exec provider requires 'command' as a non-empty list of strings")
        elif self.kind == ProviderKind.ENV:
            allowlist = self.metadata.get("allowlist")
            if allowlist is not None and not isinstance(allowlist, list):
                raise ValueError("env provider 'allowlist' must be a list")
        return self

    @classmethod
    def from_entry(cls, entry: Mapping[str, Any]) -> "ProviderConfig":
        """Build from a flat configuration entry (alias, kind, ...metadata)."""
        data = dict(entry)
        alias = data.pop("alias", None)
        kind = data.pop("kind", None)
        return cls(alias=alias, kind=kind, metadata=data)

    def to_entry(self) -> dict[str, Any]:
        """Render as a flat configuration entry."""
        return {"alias": self.alias, "kind": self.kind.value, **self.metadata}


class FailureCode(str, Enum):
    """Reasons for hard failures."""

    UNKNOWN_PROVIDER = "unknown-provider"
    SOURCE_MISMATCH = "source-mismatch"
    LOOKUP_FAILED = "lookup-failed"
    INVALID_REF = "invalid-ref"
    ALIAS_CONFLICT = "alias-conflict"
    UNKNOWN_ALIAS = "unknown-alias"
    INVALID_PROVIDER = "invalid-provider"
    INVALID_PATH = "invalid-path"

    @property
    def is_resolution(self) -> bool:
        """Whether this failure means a reference could not be resolved."""
        return self in (
            FailureCode.UNKNOWN_PROVIDER,
            FailureCode.SOURCE_MISMATCH,
            FailureCode.LOOKUP_FAILED,
            FailureCode.INVALID_REF,
        )


@dataclass(frozen=True, slots=True)
class ResolutionWarning:
    """Soft resolution failure: the provider had no value for the ref.

    Counted into ``warningCount``; never aborts an operation.
    """

    field_path: str
    ref: SecretRef
    message: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"fieldPath": self.field_path, "ref": str(self.ref), "message": self.message}


@dataclass(frozen=True, slots=True)
class ResolutionFailure:
    """Hard failure for a single field.

    Attributes:
        field_path: Field whose reference failed (or the config area at fault)
        code: Machine-readable reason (unknown-provider, source-mismatch, ...)
        message: Human-readable explanation, never containing secret values
        ref: The failing reference if there is one
    """

    field_path: str
    code: FailureCode
    message: str
    ref: SecretRef | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "fieldPath": self.field_path,
            "code": self.code.value,
            "message": self.message,
            "ref": str(self.ref) if self.ref else None,
        }


@dataclass(frozen=True, slots=True)
class RuntimeSnapshot:
    """Immutable, versioned view of all active secret values.

    A ``None`` value marks a field whose provider had no value.

    Attributes:
        version: Monotonic snapshot version
        resolved_at: When resolution finished
        values: Read-only mapping of field path to resolved value
        warning_count: Number of soft failures during resolution
        warnings: The soft failures themselves
    """

    version: int
    resolved_at: datetime
    values: Mapping[str, SecretStr | None]
    warning_count: int = 0
    warnings: tuple[ResolutionWarning, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.values, MappingProxyType):
            object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def get(self, field_path: str) -> str | None:
        """Return the plain value for a field, or None if absent or unresolved."""
        value = self.values.get(field_path)
        return value.get_secret_value() if value is not None else None

    @property
    def unresolved_paths(self) -> list[str]:
        """Fields carrying the unresolved marker."""
        return sorted(path for path, value in self.values.items() if value is None)


@dataclass(frozen=True, slots=True)
class ReloadResult:
    """Outcome of a successful reload."""

    version: int
    warning_count: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"ok": True, "version": self.version, "warningCount": self.warning_count}


class FindingKind(str, Enum):
    """Kinds of audit findings, in priority order."""

    UNRESOLVED_REF = "unresolved-ref"
    PLAINTEXT_SECRET = "plaintext-secret"
    PRECEDENCE_DRIFT = "precedence-drift"
    LEGACY_RESIDUE = "legacy-residue"


class FindingSeverity(str, Enum):
    """Severity of an audit finding."""

    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class AuditFinding:
    """A single audit result. Structured data, not an exception.

    Attributes:
        kind: What was found
        location: Field path or file path
        severity: warning or error
        detail: Human-readable explanation, never containing secret values
    """

    kind: FindingKind
    location: str
    severity: FindingSeverity
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind.value,
            "location": self.location,
            "severity": self.severity.value,
            "detail": self.detail,
        }


class ExitCode(IntEnum):
    """Process exit codes, ordered by severity.

    This numbering is a stable contract for automation.
    """

    OK = 0
    FINDINGS = 1
    USAGE = 2
    UNRESOLVED = 3
    FAILURE = 4
    RELOAD_FAILED = 5


@dataclass(frozen=True, slots=True)
class FieldEntry:
    """A leaf value found while walking a configuration document."""

    path: str
    value: Any
    secret_bearing: bool = False
    ref: SecretRef | None = None

    @property
    def is_plaintext(self) -> bool:
        """Whether this is a secret-bearing field holding a literal value."""
        return (
            self.secret_bearing
            and self.ref is None
            and self.value not in (None, "")
            and not isinstance(self.value, (dict, list, bool))
        )


@dataclass
class ResolutionResult:
    """Output of one resolver pass.

    Attributes:
        values: Field path to resolved value (None marks a soft failure)
        warnings: Soft failures
        hard_failures: Hard failures
    """

    values: dict[str, SecretStr | None] = field(default_factory=dict)
    warnings: list[ResolutionWarning] = field(default_factory=list)
    hard_failures: list[ResolutionFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when there were no hard failures."""
        return not self.hard_failures
