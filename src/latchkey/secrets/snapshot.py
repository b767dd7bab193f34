"""Runtime snapshot ownership and atomic reload.

The snapshot manager owns the single current ``RuntimeSnapshot``. Reloads
are serialized by one writer lock; readers never take that lock and
always see either the previous or the new snapshot, because a new
snapshot is published by a single reference assignment only after it has
been completely built.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from latchkey.config.settings import Settings
from latchkey.core.logging import get_logger
from latchkey.secrets.protocol import UnresolvedReference
from latchkey.secrets.providers import ProviderRegistry
from latchkey.secrets.refs import collect_refs
from latchkey.secrets.resolver import Resolver
from latchkey.secrets.types import ReloadResult, RuntimeSnapshot

logger = get_logger(__name__)

ConfigSource = Callable[[], Mapping[str, Any]]


class SnapshotManager:
    """Owns the current runtime snapshot.

    States: no snapshot, then ready; each successful reload replaces the
    ready snapshot with a newer one and never goes back.

    Example:
        manager = SnapshotManager(lambda: config)
        result = await manager.reload()
        api_key = manager.current.get("api.key")
    """

    def __init__(
        self,
        config_source: ConfigSource,
        resolver: Resolver | None = None,
        settings: Settings | None = None,
    ):
        """Initialize the snapshot manager.

        Args:
            config_source: Callable returning the configuration to resolve
            resolver: Resolver to use
            settings: Settings passed to provider lookups
        """
        self._config_source = config_source
        self._resolver = resolver or Resolver()
        self._settings = settings
        self._current: RuntimeSnapshot | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> RuntimeSnapshot | None:
        """The current snapshot. Never blocks."""
        return self._current

    @property
    def ready(self) -> bool:
        """Whether a snapshot has been published."""
        return self._current is not None

    @property
    def busy(self) -> bool:
        """Whether a reload or apply currently holds the writer lock."""
        return self._lock.locked()

    async def reload(self) -> ReloadResult:
        """Resolve the current configuration and publish a new snapshot.

        Concurrent calls wait for each other.

        Returns:
            ReloadResult with the new version and warning count

        Raises:
            UnresolvedReference: If any reference hard-fails; the previous
                snapshot stays current
            AliasConflict: If the provider registry is invalid
            ConfigurationError: If the configuration is malformed
        """
        async with self._lock:
            return await self._reload_locked()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator["SnapshotManager"]:
        """Hold the writer lock, e.g. across an apply and its reload."""
        async with self._lock:
            yield self

    async def reload_locked(self) -> ReloadResult:
        """Reload while the caller already holds ``exclusive()``."""
        if not self._lock.locked():
            raise RuntimeError("reload_locked() requires the exclusive() lock")
        return await self._reload_locked()

    async def _reload_locked(self) -> ReloadResult:
        config = self._config_source()
        refs, invalid = collect_refs(config)

        async with ProviderRegistry.from_config(config, self._settings) as registry:
            result = await self._resolver.resolve(refs, registry)

        failures = invalid + result.hard_failures
        previous = self._current
        if failures:
            logger.warning(
                "snapshot_reload_failed",
                hard_failures=len(failures),
                kept_version=previous.version if previous else None,
            )
            raise UnresolvedReference(failures)

        snapshot = RuntimeSnapshot(
            version=(previous.version if previous else 0) + 1,
            resolved_at=datetime.now(UTC),
            values=result.values,
            warning_count=len(result.warnings),
            warnings=tuple(result.warnings),
        )
        self._current = snapshot

        logger.info(
            "snapshot_published",
            version=snapshot.version,
            fields=len(snapshot.values),
            warning_count=snapshot.warning_count,
        )
        return ReloadResult(version=snapshot.version, warning_count=snapshot.warning_count)
