"""Migration plans and the plan builder.

A plan is a declarative description of provider changes and field
mappings. It references secrets only through ``SecretRef`` and never
contains a secret value, so plan files are safe to review and share.

Plan transfer format::

    {
      "version": 1,
      "providerChanges": [{"op": "add", "alias": "vault", "kind": "exec",
                           "metadata": {"command": ["vault-get"]}}],
      "fieldMappings": [{"fieldPath": "api.key",
                         "ref": {"source": "env", "id": "API_KEY"}}],
      "createdAt": "2026-01-01T00:00:00Z"
    }
"""

import os
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from latchkey.config.settings import Settings, get_settings
from latchkey.core.logging import get_logger
from latchkey.secrets.protocol import AliasConflict, PlanFileError, PlanValidationFailure
from latchkey.secrets.refs import (
    PROVIDERS_PATH,
    SECRETS_ROOT,
    load_providers,
    split_path,
    walk,
)
from latchkey.secrets.types import (
    FailureCode,
    FieldEntry,
    ProviderConfig,
    ProviderKind,
    ResolutionFailure,
    SecretRef,
)

logger = get_logger(__name__)

PLAN_VERSION = 1


class ProviderOp(str, Enum):
    """Provider change operations."""

    ADD = "add"
    EDIT = "edit"
    REMOVE = "remove"


class _PlanModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class ProviderChange(_PlanModel):
    """One change to the provider registry.

    Attributes:
        op: add, edit or remove
        alias: Provider alias the change applies to
        kind: Provider kind (required for add; optional for edit)
        metadata: Connection metadata (replaces existing metadata on edit)
    """

    op: ProviderOp
    alias: str
    kind: ProviderKind | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_kind(self) -> "ProviderChange":
        """Adding a provider needs its kind."""
        if self.op == ProviderOp.ADD and self.kind is None:
            raise ValueError("kind is required when adding a provider")
        return self


class FieldMapping(_PlanModel):
    """Maps one configuration field to a secret reference."""

    field_path: str
    ref: SecretRef

    @field_validator("field_path")
    @classmethod
    def validate_field_path(cls, v: str) -> str:
        """Mappings target object keys outside the provider section."""
        parts = split_path(v)
        if parts[0] == SECRETS_ROOT:
            raise ValueError(f"'{SECRETS_ROOT}' holds provider configuration and cannot be mapped")
        return v


class Plan(_PlanModel):
    """Immutable migration plan.

    Attributes:
        version: Transfer format version
        provider_changes: Provider changes, applied in order
        field_mappings: Field mappings, applied in order
        created_at: When the plan was started
    """

    version: Literal[1] = PLAN_VERSION
    provider_changes: tuple[ProviderChange, ...] = ()
    field_mappings: tuple[FieldMapping, ...] = ()
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def validate_unique_paths(self) -> "Plan":
        """A field may be mapped once per plan."""
        seen: set[str] = set()
        for mapping in self.field_mappings:
            if mapping.field_path in seen:
                raise ValueError(f"field '{mapping.field_path}' is mapped more than once")
            seen.add(mapping.field_path)
        return self

    @property
    def is_empty(self) -> bool:
        """True when the plan changes nothing."""
        return not self.provider_changes and not self.field_mappings

    @property
    def mapped_paths(self) -> list[str]:
        """Field paths the plan maps."""
        return [mapping.field_path for mapping in self.field_mappings]

    def to_json(self) -> str:
        """Serialize to the plan transfer format."""
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    @classmethod
    def from_json(cls, text: str | bytes) -> "Plan":
        """Parse the plan transfer format.

        Raises:
            ValidationError: If the document is not a valid plan
        """
        return cls.model_validate_json(text)

    def summary(self) -> dict[str, Any]:
        """Counts and targets, for display and logging."""
        return {
            "providerChanges": [
                f"{change.op.value} {change.alias}" for change in self.provider_changes
            ],
            "fieldMappings": [
                f"{mapping.field_path} -> {mapping.ref}" for mapping in self.field_mappings
            ],
        }


def _validation_failure(
    message: str, code: FailureCode, path: str = PROVIDERS_PATH
) -> PlanValidationFailure:
    return PlanValidationFailure(
        message, [ResolutionFailure(field_path=path, code=code, message=message)]
    )


def apply_provider_change(
    providers: Mapping[str, ProviderConfig],
    change: ProviderChange,
) -> dict[str, ProviderConfig]:
    """Return a new provider registry with one change applied.

    Raises:
        AliasConflict: If an added alias already exists
        PlanValidationFailure: If an edited or removed alias does not exist,
            or the resulting provider configuration is invalid
    """
    result = dict(providers)
    if change.op == ProviderOp.ADD:
        if change.alias in result:
            raise AliasConflict(change.alias)
        result[change.alias] = _provider_config(change.alias, change.kind, change.metadata)
        return result

    existing = result.get(change.alias)
    if existing is None:
        raise _validation_failure(
            f"Provider '{change.alias}' does not exist", FailureCode.UNKNOWN_ALIAS
        )
    if change.op == ProviderOp.REMOVE:
        del result[change.alias]
    else:
        result[change.alias] = _provider_config(
            change.alias, change.kind or existing.kind, change.metadata
        )
    return result


def project_providers(
    providers: Mapping[str, ProviderConfig],
    changes: tuple[ProviderChange, ...] | list[ProviderChange],
) -> dict[str, ProviderConfig]:
    """Apply a sequence of provider changes to a registry copy."""
    result = dict(providers)
    for change in changes:
        result = apply_provider_change(result, change)
    return result


def _provider_config(
    alias: str, kind: ProviderKind | None, metadata: Mapping[str, Any]
) -> ProviderConfig:
    try:
        return ProviderConfig(alias=alias, kind=kind, metadata=dict(metadata))
    except ValidationError as e:
        details = "; ".join(str(err.get("msg")) for err in e.errors())
        raise _validation_failure(
            f"Invalid provider '{alias}': {details}", FailureCode.INVALID_PROVIDER
        ) from e


def add_provider(
    plan: Plan,
    base: Mapping[str, ProviderConfig],
    alias: str,
    kind: ProviderKind,
    metadata: Mapping[str, Any] | None = None,
) -> Plan:
    """Return a plan that also adds a provider."""
    change = ProviderChange(
        op=ProviderOp.ADD, alias=alias, kind=kind, metadata=dict(metadata or {})
    )
    return _with_change(plan, base, change)


def edit_provider(
    plan: Plan,
    base: Mapping[str, ProviderConfig],
    alias: str,
    metadata: Mapping[str, Any],
    kind: ProviderKind | None = None,
) -> Plan:
    """Return a plan that also edits a provider's kind or metadata."""
    change = ProviderChange(op=ProviderOp.EDIT, alias=alias, kind=kind, metadata=dict(metadata))
    return _with_change(plan, base, change)


def remove_provider(plan: Plan, base: Mapping[str, ProviderConfig], alias: str) -> Plan:
    """Return a plan that also removes a provider."""
    change = ProviderChange(op=ProviderOp.REMOVE, alias=alias)
    return _with_change(plan, base, change)


def _with_change(plan: Plan, base: Mapping[str, ProviderConfig], change: ProviderChange) -> Plan:
    changes = (*plan.provider_changes, change)
    project_providers(base, changes)
    return plan.model_copy(update={"provider_changes": changes})


def map_field(plan: Plan, field_path: str, ref: SecretRef) -> Plan:
    """Return a plan that also maps a field to a reference.

    Raises:
        PlanValidationFailure: If the path is invalid or already mapped
    """
    try:
        mapping = FieldMapping(field_path=field_path, ref=ref)
    except ValidationError as e:
        message = f"Cannot map '{field_path}': {e.errors()[0].get('msg')}"
        raise _validation_failure(message, FailureCode.INVALID_PATH, field_path) from e
    if field_path in plan.mapped_paths:
        raise _validation_failure(
            f"Field '{field_path}' is already mapped in this plan",
            FailureCode.INVALID_PATH,
            field_path,
        )
    return plan.model_copy(update={"field_mappings": (*plan.field_mappings, mapping)})


class PlanBuilder:
    """Builds a plan step by step against a configuration.

    Each step validates against the provider registry as the plan would
    leave it, so a conflict is reported when it is introduced rather than
    at apply time. The configuration is only read.

    Example:
        builder = PlanBuilder(config)
        builder.add_provider("vault", ProviderKind.EXEC, {"command": ["vault-get"]})
        for entry in builder.pending_fields():
            ref = SecretRef(source="provider", provider="vault", id=entry.path)
            builder.map_field(entry.path, ref)
        plan = builder.build()
    """

    def __init__(
        self,
        config: Mapping[str, Any],
        settings: Settings | None = None,
        plan: Plan | None = None,
    ):
        """Initialize the builder.

        Args:
            config: Current configuration document
            settings: Settings supplying secret field names
            plan: Plan to continue from

        Raises:
            AliasConflict: If the current registry already has duplicates
            ConfigurationError: If the provider section is malformed
        """
        self._config = config
        self._settings = settings or get_settings()
        self._base = load_providers(config)
        self.plan = plan or Plan()

    @property
    def providers(self) -> dict[str, ProviderConfig]:
        """Provider registry as the plan would leave it."""
        return project_providers(self._base, self.plan.provider_changes)

    def add_provider(
        self,
        alias: str,
        kind: ProviderKind,
        metadata: Mapping[str, Any] | None = None,
    ) -> Plan:
        self.plan = add_provider(self.plan, self._base, alias, kind, metadata)
        return self.plan

    def edit_provider(
        self,
        alias: str,
        metadata: Mapping[str, Any],
        kind: ProviderKind | None = None,
    ) -> Plan:
        self.plan = edit_provider(self.plan, self._base, alias, metadata, kind)
        return self.plan

    def remove_provider(self, alias: str) -> Plan:
        self.plan = remove_provider(self.plan, self._base, alias)
        return self.plan

    def map_field(self, field_path: str, ref: SecretRef) -> Plan:
        self.plan = map_field(self.plan, field_path, ref)
        return self.plan

    def pending_fields(self, include_migrated: bool = False) -> list[FieldEntry]:
        """Secret-bearing fields that are candidates for mapping.

        Args:
            include_migrated: Also list fields that already hold a reference

        Returns:
            Object-key fields outside the provider section that the plan
            does not map yet
        """
        mapped = set(self.plan.mapped_paths)
        candidates = []
        for entry in walk(self._config, self._settings.secret_field_names):
            if not entry.secret_bearing or "[" in entry.path:
                continue
            if entry.path.split(".", 1)[0] == SECRETS_ROOT or entry.path in mapped:
                continue
            if entry.is_plaintext or (include_migrated and entry.ref is not None):
                candidates.append(entry)
        return candidates

    def build(self) -> Plan:
        """The finished plan."""
        logger.debug(
            "plan_built",
            provider_changes=len(self.plan.provider_changes),
            field_mappings=len(self.plan.field_mappings),
        )
        return self.plan


def write_plan(plan: Plan, path: Path | str) -> Path:
    """Write a plan file. Existing files are never overwritten.

    Raises:
        PlanFileError: If the file exists or cannot be written
    """
    path = Path(path)
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        raise PlanFileError(str(path), "already exists; plan files are never overwritten") from None
    except OSError as e:
        raise PlanFileError(str(path), f"cannot create ({e.strerror})") from e

    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(plan.to_json())
        handle.write("\n")
    logger.info("plan_written", path=str(path), field_mappings=len(plan.field_mappings))
    return path


def read_plan(path: Path | str) -> Plan:
    """Read a plan file.

    Raises:
        PlanFileError: If the file cannot be read or is not a valid plan
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PlanFileError(str(path), f"cannot read ({e.strerror})") from e
    try:
        return Plan.from_json(text)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in e.errors()[:3]
        )
        raise PlanFileError(str(path), f"not a valid plan ({details})") from None
