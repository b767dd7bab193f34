"""Plan apply engine.

Applying a plan runs preflight, commits the plan step by step to the
configuration store and reloads the runtime snapshot. The whole sequence
holds the snapshot manager's writer lock, so no reload can interleave
with it.

Migration is one-way: a mapped field's literal value is replaced by its
reference in the persisted configuration and nothing keeps the old
value. If the commit fails midway the in-memory configuration is
restored, but the on-disk state is reported as unknown; there is no
automatic on-disk rollback.
"""

import asyncio
import contextlib
import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from latchkey.config.settings import Settings, get_settings
from latchkey.core.logging import get_logger
from latchkey.secrets.plan import Plan, project_providers
from latchkey.secrets.preflight import PreflightResult, preflight
from latchkey.secrets.protocol import (
    ApplyError,
    ApplyPartialFailure,
    ApplyTimeout,
    SecretsError,
)
from latchkey.secrets.refs import get_path, is_ref_shaped, load_providers, set_path, store_providers
from latchkey.secrets.resolver import Resolver
from latchkey.secrets.snapshot import SnapshotManager
from latchkey.secrets.store import ConfigStore
from latchkey.secrets.types import ExitCode
from latchkey.utils.exceptions import ConfigurationError

logger = get_logger(__name__)

Step = tuple[str, Callable[[dict[str, Any]], None]]


class ApplyMode(str, Enum):
    """How far an apply goes."""

    DRY_RUN = "dry-run"
    COMMIT = "commit"


@dataclass
class ApplyResult:
    """Outcome of an apply.

    A commit can succeed while the reload after it fails; that is reported
    through ``reload_error`` and never rolls the commit back.

    Attributes:
        mode: dry-run or commit
        applied: Whether the plan was written
        warning_count: References whose provider had no value
        migrated_fields: Mapped fields that held a literal value before
        mapped_fields: Every field the plan maps
        provider_changes: Provider changes, e.g. ``add vault``
        reload_version: Snapshot version published after the commit
        reload_error: Why the reload after the commit failed
    """

    mode: ApplyMode
    applied: bool = False
    warning_count: int = 0
    migrated_fields: list[str] = field(default_factory=list)
    mapped_fields: list[str] = field(default_factory=list)
    provider_changes: list[str] = field(default_factory=list)
    reload_version: int | None = None
    reload_error: Exception | None = None

    @property
    def reloaded(self) -> bool:
        return self.reload_version is not None

    @property
    def exit_code(self) -> ExitCode:
        if self.applied and self.reload_error is not None:
            return ExitCode.RELOAD_FAILED
        return ExitCode.OK

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        reload_error: dict[str, Any] | None = None
        if isinstance(self.reload_error, SecretsError):
            reload_error = self.reload_error.to_dict()
        elif self.reload_error is not None:
            reload_error = {
                "type": type(self.reload_error).__name__,
                "message": str(self.reload_error),
            }
        return {
            "ok": self.exit_code == ExitCode.OK,
            "mode": self.mode.value,
            "applied": self.applied,
            "warningCount": self.warning_count,
            "migratedFields": self.migrated_fields,
            "mappedFields": self.mapped_fields,
            "providerChanges": self.provider_changes,
            "reloaded": self.reloaded,
            "reloadVersion": self.reload_version,
            "reloadError": reload_error,
        }


class ApplyEngine:
    """Commits plans to a configuration.

    The engine works on the caller's live configuration dictionary,
    which is mutated in place as steps commit and restored in place if a
    commit fails.

    Example:
        engine = ApplyEngine(config, store, snapshots, settings=settings)
        result = await engine.apply(plan)
        if result.reload_error:
            ...
    """

    def __init__(
        self,
        config: dict[str, Any],
        store: ConfigStore,
        snapshots: SnapshotManager,
        resolver: Resolver | None = None,
        settings: Settings | None = None,
    ):
        """Initialize the apply engine.

        Args:
            config: Live configuration (mutated in place on commit)
            store: Where committed steps are persisted
            snapshots: Snapshot manager reloaded after the commit
            resolver: Resolver used by preflight
            settings: Settings for timeouts and provider lookups
        """
        self.config = config
        self.store = store
        self.snapshots = snapshots
        self.settings = settings or get_settings()
        self.resolver = resolver or Resolver(self.settings.provider_timeout_seconds)

    async def apply(
        self,
        plan: Plan,
        mode: ApplyMode = ApplyMode.COMMIT,
        timeout: float | None = None,
    ) -> ApplyResult:
        """Preflight, commit and reload.

        Args:
            plan: Plan to apply
            mode: ``DRY_RUN`` stops after preflight
            timeout: Seconds allowed before the first write (default from settings)

        Returns:
            ApplyResult describing what happened

        Raises:
            UnresolvedReference: If a projected reference cannot be resolved
            PlanValidationFailure: If the plan is invalid
            ApplyTimeout: If the writer lock and preflight did not finish in time;
                nothing was written
            ApplyError: If the first write failed; nothing was written
            ApplyPartialFailure: If a later write failed; on-disk state unknown
        """
        if timeout is None:
            timeout = self.settings.apply_timeout_seconds

        async with contextlib.AsyncExitStack() as stack:
            try:
                async with asyncio.timeout(timeout):
                    await stack.enter_async_context(self.snapshots.exclusive())
                    checked = await preflight(plan, self.config, self.resolver, self.settings)
            except TimeoutError:
                logger.warning("apply_timed_out", timeout=timeout)
                raise ApplyTimeout(timeout) from None
            checked.raise_for_failures()

            result = self._result(plan, checked, mode)
            if mode == ApplyMode.DRY_RUN:
                logger.info("apply_dry_run", mapped_fields=len(result.mapped_fields))
                return result

            self._commit(plan)
            result.applied = True

            try:
                reload = await self.snapshots.reload_locked()
            except (SecretsError, ConfigurationError) as e:
                logger.error("apply_reload_failed", error_type=type(e).__name__)
                result.reload_error = e
            else:
                result.reload_version = reload.version
                result.warning_count = reload.warning_count

        logger.info(
            "plan_applied",
            migrated_fields=len(result.migrated_fields),
            provider_changes=len(result.provider_changes),
            reload_version=result.reload_version,
        )
        return result

    def _result(self, plan: Plan, checked: PreflightResult, mode: ApplyMode) -> ApplyResult:
        migrated = []
        for mapping in plan.field_mappings:
            current = get_path(self.config, mapping.field_path)
            if current not in (None, "") and not is_ref_shaped(current):
                migrated.append(mapping.field_path)
        return ApplyResult(
            mode=mode,
            warning_count=checked.warning_count,
            migrated_fields=migrated,
            mapped_fields=plan.mapped_paths,
            provider_changes=[f"{c.op.value} {c.alias}" for c in plan.provider_changes],
        )

    def _steps(self, plan: Plan) -> list[Step]:
        steps: list[Step] = []
        if plan.provider_changes:

            def change_providers(config: dict[str, Any]) -> None:
                providers = project_providers(load_providers(config), plan.provider_changes)
                store_providers(config, providers)

            steps.append(("providers", change_providers))

        for mapping in plan.field_mappings:

            def map_field(config: dict[str, Any], mapping=mapping) -> None:
                set_path(config, mapping.field_path, mapping.ref.to_config())

            steps.append((f"map {mapping.field_path}", map_field))
        return steps

    def _commit(self, plan: Plan) -> None:
        # No await in here: readers and the timeout can't observe a half-applied config.
        original = copy.deepcopy(self.config)
        completed: list[str] = []
        try:
            for name, step in self._steps(plan):
                try:
                    step(self.config)
                    self.store.write(self.config)
                except Exception as e:
                    self._restore(original)
                    logger.error(
                        "apply_step_failed",
                        step=name,
                        completed_steps=len(completed),
                        error_type=type(e).__name__,
                    )
                    if completed:
                        raise ApplyPartialFailure(
                            completed_steps=completed, failed_step=name, restored=True, cause=e
                        ) from e
                    raise ApplyError(
                        f"Apply failed at '{name}' ({type(e).__name__}); nothing was written "
                        "and the in-memory configuration was restored",
                        failed_step=name,
                        restored=True,
                        cause=e,
                    ) from e
                completed.append(name)
                logger.debug("apply_step_committed", step=name)
        finally:
            del original

    def _restore(self, original: dict[str, Any]) -> None:
        self.config.clear()
        self.config.update(original)
