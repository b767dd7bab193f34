"""Secrets resolution and lifecycle management.

This module provides:
- SecretRef, the symbolic pointer stored in configuration instead of a value
- Provider lookups (env, file, exec) and the per-pass ProviderRegistry
- Resolver with partial-failure isolation
- SnapshotManager for atomic runtime reloads
- AuditScanner for plaintext, drift and residue detection
- PlanBuilder, preflight and ApplyEngine for one-way migrations
- SecretsRuntime tying them together for a host process

Example:
    from latchkey.secrets import SecretsRuntime

    async with SecretsRuntime() as runtime:
        api_key = runtime.snapshot.get("models.openai.apiKey")

        builder = runtime.plan_builder()
        for entry in builder.pending_fields():
            builder.map_field(entry.path, SecretRef(source="env", id="OPENAI_API_KEY"))
        result = await runtime.apply(builder.build())
"""

from latchkey.secrets.apply import ApplyEngine, ApplyMode, ApplyResult
from latchkey.secrets.audit import AuditReport, AuditScanner, DiskArtifacts
from latchkey.secrets.plan import (
    FieldMapping,
    Plan,
    PlanBuilder,
    ProviderChange,
    ProviderOp,
    read_plan,
    write_plan,
)
from latchkey.secrets.preflight import PreflightResult, preflight, project_config
from latchkey.secrets.protocol import (
    AliasConflict,
    ApplyError,
    ApplyPartialFailure,
    ApplyTimeout,
    PlanFileError,
    PlanValidationFailure,
    ProviderLookup,
    ProviderLookupError,
    SecretsError,
    UnresolvedReference,
)
from latchkey.secrets.providers import EnvProvider, ExecProvider, FileProvider, ProviderRegistry
from latchkey.secrets.resolver import Resolver
from latchkey.secrets.runtime import SecretsRuntime
from latchkey.secrets.snapshot import SnapshotManager
from latchkey.secrets.store import ConfigStore, JsonConfigStore
from latchkey.secrets.types import (
    AuditFinding,
    ExitCode,
    FindingKind,
    FindingSeverity,
    ProviderConfig,
    ProviderKind,
    ReloadResult,
    ResolutionFailure,
    ResolutionWarning,
    RuntimeSnapshot,
    SecretRef,
    SecretSource,
)

__all__ = [
    # Protocol
    "ProviderLookup",
    # Types
    "SecretRef",
    "SecretSource",
    "ProviderConfig",
    "ProviderKind",
    "RuntimeSnapshot",
    "ReloadResult",
    "ResolutionWarning",
    "ResolutionFailure",
    "AuditFinding",
    "FindingKind",
    "FindingSeverity",
    "ExitCode",
    # Errors
    "SecretsError",
    "ProviderLookupError",
    "AliasConflict",
    "UnresolvedReference",
    "PlanValidationFailure",
    "ApplyError",
    "ApplyPartialFailure",
    "ApplyTimeout",
    "PlanFileError",
    # Providers
    "EnvProvider",
    "FileProvider",
    "ExecProvider",
    "ProviderRegistry",
    # Resolution
    "Resolver",
    "SnapshotManager",
    # Storage
    "ConfigStore",
    "JsonConfigStore",
    # Audit
    "AuditScanner",
    "AuditReport",
    "DiskArtifacts",
    # Plans
    "Plan",
    "ProviderChange",
    "ProviderOp",
    "FieldMapping",
    "PlanBuilder",
    "read_plan",
    "write_plan",
    "PreflightResult",
    "preflight",
    "project_config",
    # Apply
    "ApplyEngine",
    "ApplyMode",
    "ApplyResult",
    # Runtime
    "SecretsRuntime",
]
