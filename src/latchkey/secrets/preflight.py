"""Plan preflight validation.

Preflight projects a plan onto a copy of the configuration and resolves
every reference the projected configuration would hold. It never writes
and never touches the snapshot manager, so it can run as often as needed
before an apply.
"""

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from latchkey.config.settings import Settings, get_settings
from latchkey.core.logging import get_logger
from latchkey.secrets.plan import Plan, project_providers
from latchkey.secrets.protocol import AliasConflict, PlanValidationFailure, UnresolvedReference
from latchkey.secrets.providers import ProviderRegistry
from latchkey.secrets.refs import (
    PROVIDERS_PATH,
    collect_refs,
    load_providers,
    set_path,
    store_providers,
)
from latchkey.secrets.resolver import Resolver
from latchkey.secrets.types import FailureCode, ResolutionFailure, ResolutionWarning
from latchkey.utils.exceptions import ConfigurationError

logger = get_logger(__name__)


@dataclass
class PreflightResult:
    """Outcome of a preflight run.

    Attributes:
        ok: True when the plan can be applied
        warnings: References whose provider has no value (non-blocking)
        hard_failures: Problems that block the apply
        projected_config: Configuration as the plan would leave it, or None
            if the plan could not be projected
    """

    ok: bool
    warnings: list[ResolutionWarning] = field(default_factory=list)
    hard_failures: list[ResolutionFailure] = field(default_factory=list)
    projected_config: dict[str, Any] | None = None

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    @property
    def has_unresolved(self) -> bool:
        """Whether any failure is a reference that cannot be resolved."""
        return any(failure.code.is_resolution for failure in self.hard_failures)

    def raise_for_failures(self) -> None:
        """Raise the error matching the hard failures, if there are any.

        Raises:
            UnresolvedReference: If a projected reference cannot be resolved
            PlanValidationFailure: If the plan itself is invalid
        """
        if not self.hard_failures:
            return
        if self.has_unresolved:
            raise UnresolvedReference(self.hard_failures)
        raise PlanValidationFailure("Plan failed preflight validation", self.hard_failures)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary. The projected configuration is not included."""
        return {
            "ok": self.ok,
            "warningCount": self.warning_count,
            "warnings": [warning.to_dict() for warning in self.warnings],
            "hardFailures": [failure.to_dict() for failure in self.hard_failures],
        }


def project_config(plan: Plan, config: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``config`` with the plan applied. ``config`` is not modified.

    Raises:
        AliasConflict: If the plan adds an alias that already exists
        PlanValidationFailure: If a change or mapping cannot be applied
        ConfigurationError: If the existing provider section is malformed
    """
    projected = copy.deepcopy(dict(config))

    if plan.provider_changes:
        providers = project_providers(load_providers(projected), plan.provider_changes)
        store_providers(projected, providers)

    for mapping in plan.field_mappings:
        try:
            set_path(projected, mapping.field_path, mapping.ref.to_config())
        except ValueError as e:
            raise PlanValidationFailure(
                str(e),
                [
                    ResolutionFailure(
                        field_path=mapping.field_path,
                        code=FailureCode.INVALID_PATH,
                        message=str(e),
                        ref=mapping.ref,
                    )
                ],
            ) from e
    return projected


async def preflight(
    plan: Plan,
    config: Mapping[str, Any],
    resolver: Resolver | None = None,
    settings: Settings | None = None,
) -> PreflightResult:
    """Validate a plan against a configuration without side effects.

    Args:
        plan: Plan to validate
        config: Current configuration (never modified)
        resolver: Resolver to use
        settings: Settings passed to provider lookups

    Returns:
        PreflightResult; ``ok`` is False when anything would block apply
    """
    settings = settings or get_settings()
    resolver = resolver or Resolver(settings.provider_timeout_seconds)

    try:
        projected = project_config(plan, config)
    except PlanValidationFailure as e:
        return _rejected(e.failures)
    except AliasConflict as e:
        return _rejected(
            [
                ResolutionFailure(
                    field_path=PROVIDERS_PATH, code=FailureCode.ALIAS_CONFLICT, message=str(e)
                )
            ]
        )
    except ConfigurationError as e:
        return _rejected(
            [
                ResolutionFailure(
                    field_path=PROVIDERS_PATH, code=FailureCode.INVALID_PROVIDER, message=str(e)
                )
            ]
        )

    refs, invalid = collect_refs(projected)
    async with ProviderRegistry.from_config(projected, settings) as registry:
        resolution = await resolver.resolve(refs, registry)

    failures = invalid + resolution.hard_failures
    result = PreflightResult(
        ok=not failures,
        warnings=resolution.warnings,
        hard_failures=failures,
        projected_config=projected,
    )
    logger.info(
        "preflight_completed",
        ok=result.ok,
        refs=len(refs),
        warning_count=result.warning_count,
        hard_failures=len(failures),
    )
    return result


def _rejected(failures: list[ResolutionFailure]) -> PreflightResult:
    logger.info(
        "preflight_rejected",
        hard_failures=len(failures),
        codes=sorted({f.code.value for f in failures}),
    )
    return PreflightResult(ok=False, hard_failures=list(failures))
