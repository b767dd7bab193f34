"""Read-only audit of configuration and on-disk secret residue.

The scanner looks for:
- plaintext secrets in secret-bearing fields
- references that cannot be resolved
- auth-profile overlays that silently shadow a configured reference
- legacy plaintext credential files

A scan never writes, never touches the snapshot manager and gives the
same findings for the same input.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from latchkey.config.settings import Settings, get_settings
from latchkey.core.logging import get_logger
from latchkey.secrets.providers import ProviderRegistry
from latchkey.secrets.refs import collect_refs, is_secret_field, walk
from latchkey.secrets.resolver import Resolver
from latchkey.secrets.store import read_json_file
from latchkey.secrets.types import (
    AuditFinding,
    ExitCode,
    FindingKind,
    FindingSeverity,
)
from latchkey.utils.exceptions import ConfigurationError

logger = get_logger(__name__)

_KIND_ORDER = {kind: index for index, kind in enumerate(FindingKind)}


@dataclass(frozen=True, slots=True)
class OverlayValue:
    """A value an auth profile supplies for a configuration field."""

    profile: str
    field_path: str
    value: Any


@dataclass(frozen=True, slots=True)
class DiskArtifacts:
    """On-disk inputs to an audit besides the configuration itself.

    Attributes:
        overlays: Values supplied by auth-profile overlays
        overlay_source: Name of the overlay file, used in finding locations
        legacy_files: Paths of legacy plaintext artifacts that exist
    """

    overlays: tuple[OverlayValue, ...] = ()
    overlay_source: str = "auth-profiles.json"
    legacy_files: tuple[str, ...] = ()

    @classmethod
    def collect(cls, settings: Settings | None = None) -> "DiskArtifacts":
        """Read overlays and probe for legacy files without modifying anything.

        Raises:
            ConfigurationError: If the overlay file is malformed
        """
        settings = settings or get_settings()
        overlays_path = settings.auth_profiles_file
        overlays: tuple[OverlayValue, ...] = ()
        if overlays_path.is_file():
            overlays = parse_overlays(read_json_file(overlays_path), str(overlays_path))

        legacy = tuple(
            str(path) for path in settings.legacy_artifact_paths() if path.exists()
        )
        return cls(overlays=overlays, overlay_source=str(overlays_path), legacy_files=legacy)


def parse_overlays(document: Any, source: str = "auth-profiles.json") -> tuple[OverlayValue, ...]:
    """Parse an auth-profile overlay document.

    Format::

        {"profiles": {"work": {"overrides": {"api.key": "...", "models": {...}}}}}

    Raises:
        ConfigurationError: If the document does not have that shape
    """
    if not isinstance(document, Mapping):
        raise ConfigurationError(f"{source} must contain a JSON object")
    profiles = document.get("profiles", {})
    if not isinstance(profiles, Mapping):
        raise ConfigurationError(f"{source}: 'profiles' must be an object")

    values: list[OverlayValue] = []
    for name, profile in profiles.items():
        if not isinstance(profile, Mapping):
            raise ConfigurationError(f"{source}: profile '{name}' must be an object")
        overrides = profile.get("overrides", {})
        if not isinstance(overrides, Mapping):
            raise ConfigurationError(f"{source}: profile '{name}' overrides must be an object")
        for entry in walk(overrides):
            values.append(OverlayValue(profile=str(name), field_path=entry.path, value=entry.value))
    return tuple(values)


@dataclass
class AuditReport:
    """Result of one audit scan.

    Attributes:
        findings: Findings sorted by kind priority, then location
        resolution_warnings: References whose provider had no value
    """

    findings: list[AuditFinding] = field(default_factory=list)
    resolution_warnings: int = 0

    @property
    def clean(self) -> bool:
        """True when nothing was found."""
        return not self.findings

    @property
    def has_unresolved(self) -> bool:
        """True when at least one reference cannot be resolved."""
        return any(f.kind == FindingKind.UNRESOLVED_REF for f in self.findings)

    @property
    def exit_code(self) -> ExitCode:
        """Aggregate exit signal; unresolved references take priority."""
        if self.has_unresolved:
            return ExitCode.UNRESOLVED
        if self.findings:
            return ExitCode.FINDINGS
        return ExitCode.OK

    def counts(self) -> dict[str, int]:
        """Number of findings per kind."""
        counts = {kind.value: 0 for kind in FindingKind}
        for finding in self.findings:
            counts[finding.kind.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "clean": self.clean,
            "exitCode": int(self.exit_code),
            "counts": self.counts(),
            "resolutionWarnings": self.resolution_warnings,
            "findings": [finding.to_dict() for finding in self.findings],
        }


class AuditScanner:
    """Side-effect-free scanner producing audit findings.

    Example:
        scanner = AuditScanner(settings=settings)
        report = await scanner.scan(config, DiskArtifacts.collect(settings))
        sys.exit(report.exit_code)
    """

    def __init__(self, resolver: Resolver | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.resolver = resolver or Resolver(self.settings.provider_timeout_seconds)

    async def scan(
        self,
        config: Mapping[str, Any],
        artifacts: DiskArtifacts | None = None,
    ) -> AuditReport:
        """Scan a configuration and its on-disk artifacts.

        Args:
            config: Configuration document (never modified)
            artifacts: Overlays and legacy files (defaults to none)

        Returns:
            AuditReport with sorted findings

        Raises:
            AliasConflict: If the provider registry is invalid
            ConfigurationError: If the provider section is malformed
        """
        artifacts = artifacts or DiskArtifacts()
        names = self.settings.secret_field_names
        findings: list[AuditFinding] = []

        for entry in walk(config, names):
            if entry.is_plaintext:
                findings.append(
                    AuditFinding(
                        kind=FindingKind.PLAINTEXT_SECRET,
                        location=entry.path,
                        severity=FindingSeverity.WARNING,
                        detail="Secret-bearing field holds a literal value instead of a reference",
                    )
                )

        refs, invalid = collect_refs(config)
        async with ProviderRegistry.from_config(config, self.settings) as registry:
            result = await self.resolver.resolve(refs, registry)

        for failure in invalid + result.hard_failures:
            findings.append(
                AuditFinding(
                    kind=FindingKind.UNRESOLVED_REF,
                    location=failure.field_path,
                    severity=FindingSeverity.ERROR,
                    detail=failure.message,
                )
            )

        for overlay in artifacts.overlays:
            if overlay.field_path in refs:
                findings.append(
                    AuditFinding(
                        kind=FindingKind.PRECEDENCE_DRIFT,
                        location=overlay.field_path,
                        severity=FindingSeverity.WARNING,
                        detail=(
                            f"Auth profile '{overlay.profile}' overrides the configured "
                            f"reference {refs[overlay.field_path]}"
                        ),
                    )
                )
            if (
                is_secret_field(overlay.field_path, names)
                and isinstance(overlay.value, (str, int, float))
                and not isinstance(overlay.value, bool)
                and overlay.value != ""
            ):
                findings.append(
                    AuditFinding(
                        kind=FindingKind.PLAINTEXT_SECRET,
                        location=(
                            f"{artifacts.overlay_source}#{overlay.profile}:{overlay.field_path}"
                        ),
                        severity=FindingSeverity.WARNING,
                        detail="Auth profile stores a literal secret value",
                    )
                )

        for path in artifacts.legacy_files:
            findings.append(
                AuditFinding(
                    kind=FindingKind.LEGACY_RESIDUE,
                    location=path,
                    severity=FindingSeverity.WARNING,
                    detail="Legacy plaintext credentials file is still present",
                )
            )

        findings.sort(key=lambda f: (_KIND_ORDER[f.kind], f.location, f.detail))
        report = AuditReport(findings=findings, resolution_warnings=len(result.warnings))
        logger.info(
            "audit_completed",
            exit_code=int(report.exit_code),
            findings=len(findings),
            counts=report.counts(),
        )
        return report
