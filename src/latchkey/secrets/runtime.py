"""Secrets runtime lifecycle.

``SecretsRuntime`` wires the configuration store, snapshot manager,
audit scanner and apply engine together for one host configuration.
Hosts create one runtime at startup and pass it to whatever needs it
(the CLI, the ``secrets.reload`` RPC handler).

Example:
    async with SecretsRuntime(get_settings()) as runtime:
        api_key = runtime.snapshot.get("api.key")
        await runtime.reload()
"""

from typing import Any

from latchkey.config.settings import Settings, get_settings
from latchkey.core.logging import get_logger
from latchkey.secrets.apply import ApplyEngine, ApplyMode, ApplyResult
from latchkey.secrets.audit import AuditReport, AuditScanner, DiskArtifacts
from latchkey.secrets.plan import Plan, PlanBuilder
from latchkey.secrets.preflight import PreflightResult, preflight
from latchkey.secrets.resolver import Resolver
from latchkey.secrets.snapshot import SnapshotManager
from latchkey.secrets.store import ConfigStore, JsonConfigStore
from latchkey.secrets.types import ReloadResult, RuntimeSnapshot

logger = get_logger(__name__)


class SecretsRuntime:
    """Owns the live configuration and the current runtime snapshot."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: ConfigStore | None = None,
        resolver: Resolver | None = None,
    ):
        """Initialize the runtime.

        Args:
            settings: Settings (defaults to ``get_settings()``)
            store: Configuration store (defaults to the JSON file in settings)
            resolver: Resolver shared by reload, preflight and audit
        """
        self.settings = settings or get_settings()
        self.store = store or JsonConfigStore(self.settings.config_file)
        self.resolver = resolver or Resolver(self.settings.provider_timeout_seconds)
        self.config: dict[str, Any] = {}
        self.snapshots = SnapshotManager(self._load_config, self.resolver, self.settings)
        self._started = False

    @property
    def snapshot(self) -> RuntimeSnapshot | None:
        """The current runtime snapshot. Never blocks."""
        return self.snapshots.current

    @property
    def started(self) -> bool:
        return self._started

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("Secrets runtime not started. Call start() first.")

    def _load_config(self) -> dict[str, Any]:
        fresh = self.store.read()
        self.config.clear()
        self.config.update(fresh)
        return self.config

    async def start(self, *, resolve: bool = True) -> ReloadResult | None:
        """Load the configuration and, by default, publish the first snapshot.

        Args:
            resolve: Resolve references now; otherwise only load the configuration

        Raises:
            UnresolvedReference: If a reference cannot be resolved
            ConfigurationError: If the configuration cannot be read
        """
        if self._started:
            logger.debug("secrets_runtime_already_started")
            return None
        result = None
        if resolve:
            result = await self.snapshots.reload()
        else:
            self._load_config()
        self._started = True
        logger.info("secrets_runtime_started", config=str(self.settings.config_file))
        return result

    async def close(self) -> None:
        """Release the runtime. The snapshot is dropped with it."""
        if self._started:
            self._started = False
            logger.info("secrets_runtime_closed")

    async def __aenter__(self) -> "SecretsRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def reload(self) -> ReloadResult:
        """Re-read the configuration and publish a new snapshot.

        Raises:
            UnresolvedReference: If a reference cannot be resolved; the
                previous snapshot stays current
        """
        return await self.snapshots.reload()

    async def audit(self, artifacts: DiskArtifacts | None = None) -> AuditReport:
        """Audit the current configuration and on-disk artifacts."""
        self._require_started()
        if artifacts is None:
            artifacts = DiskArtifacts.collect(self.settings)
        scanner = AuditScanner(self.resolver, self.settings)
        return await scanner.scan(self.config, artifacts)

    def plan_builder(self, plan: Plan | None = None) -> PlanBuilder:
        """A plan builder over the current configuration."""
        self._require_started()
        return PlanBuilder(self.config, self.settings, plan)

    async def preflight(self, plan: Plan) -> PreflightResult:
        """Validate a plan against the current configuration."""
        self._require_started()
        return await preflight(plan, self.config, self.resolver, self.settings)

    async def apply(
        self,
        plan: Plan,
        dry_run: bool = False,
        timeout: float | None = None,
    ) -> ApplyResult:
        """Apply a plan and reload the snapshot. See ``ApplyEngine.apply``."""
        self._require_started()
        engine = ApplyEngine(self.config, self.store, self.snapshots, self.resolver, self.settings)
        mode = ApplyMode.DRY_RUN if dry_run else ApplyMode.COMMIT
        return await engine.apply(plan, mode, timeout)
