"""Tests for the audit scanner."""

import copy
import json
from pathlib import Path

import pytest

from latchkey.secrets.audit import (
    AuditScanner,
    DiskArtifacts,
    OverlayValue,
    parse_overlays,
)
from latchkey.secrets.types import ExitCode, FindingKind, FindingSeverity
from latchkey.utils.exceptions import ConfigurationError


@pytest.fixture
def scanner(settings) -> AuditScanner:
    return AuditScanner(settings=settings)


class TestAuditScanner:
    """Tests for AuditScanner."""

    @pytest.mark.asyncio
    async def test_plaintext_api_key(self, scanner: AuditScanner) -> None:
        """Test a literal api key with no providers is one warning-level finding."""
        report = await scanner.scan({"api": {"key": "sk-live-123"}})

        assert [(f.kind, f.location) for f in report.findings] == [
            (FindingKind.PLAINTEXT_SECRET, "api.key")
        ]
        assert report.findings[0].severity == FindingSeverity.WARNING
        assert report.exit_code == ExitCode.FINDINGS
        assert "sk-live-123" not in json.dumps(report.to_dict())

    @pytest.mark.asyncio
    async def test_clean_config(self, scanner: AuditScanner, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test resolvable refs and no residue produce a clean report."""
        monkeypatch.setenv("LK_AUDIT_KEY", "v")
        report = await scanner.scan({"api": {"key": {"source": "env", "id": "LK_AUDIT_KEY"}}})
        assert report.clean
        assert report.exit_code == ExitCode.OK

    @pytest.mark.asyncio
    async def test_unresolved_takes_priority(self, scanner: AuditScanner) -> None:
        """Test unresolved refs set the unresolved exit code even with other findings."""
        config = {
            "api": {"key": {"source": "provider", "provider": "vault1", "id": "api-key"}},
            "db": {"password": "hunter2"},
        }
        report = await scanner.scan(config)

        assert [f.kind for f in report.findings] == [
            FindingKind.UNRESOLVED_REF,
            FindingKind.PLAINTEXT_SECRET,
        ]
        assert report.findings[0].severity == FindingSeverity.ERROR
        assert report.exit_code == ExitCode.UNRESOLVED

    @pytest.mark.asyncio
    async def test_malformed_ref_is_unresolved(self, scanner: AuditScanner) -> None:
        """Test malformed refs are reported as unresolved."""
        report = await scanner.scan({"api": {"key": {"source": "provider", "id": "x"}}})
        assert report.has_unresolved

    @pytest.mark.asyncio
    async def test_empty_values_are_warnings_not_findings(self, scanner: AuditScanner) -> None:
        """Test soft failures are counted separately."""
        report = await scanner.scan({"api": {"key": {"source": "env", "id": "LK_AUDIT_UNSET_VAR"}}})
        assert report.clean
        assert report.resolution_warnings == 1

    @pytest.mark.asyncio
    async def test_precedence_drift_and_overlay_plaintext(
        self, scanner: AuditScanner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test overlays shadowing a ref are drift, and literal overlay secrets are plaintext."""
        monkeypatch.setenv("LK_AUDIT_KEY", "v")
        artifacts = DiskArtifacts(
            overlays=(
                OverlayValue(profile="work", field_path="api.key", value="sk-overlay"),
                OverlayValue(profile="work", field_path="api.url", value="https://x"),
            ),
            overlay_source="auth-profiles.json",
        )
        report = await scanner.scan(
            {"api": {"key": {"source": "env", "id": "LK_AUDIT_KEY"}}}, artifacts
        )

        assert [(f.kind, f.location) for f in report.findings] == [
            (FindingKind.PLAINTEXT_SECRET, "auth-profiles.json#work:api.key"),
            (FindingKind.PRECEDENCE_DRIFT, "api.key"),
        ]
        assert "sk-overlay" not in json.dumps(report.to_dict())

    @pytest.mark.asyncio
    async def test_legacy_residue(self, scanner: AuditScanner, settings) -> None:
        """Test existing legacy files are reported."""
        legacy = settings.home / "credentials.json"
        legacy.write_text("{}")
        report = await scanner.scan({}, DiskArtifacts.collect(settings))

        assert [(f.kind, f.location) for f in report.findings] == [
            (FindingKind.LEGACY_RESIDUE, str(legacy))
        ]
        assert report.exit_code == ExitCode.FINDINGS

    @pytest.mark.asyncio
    async def test_scan_is_idempotent_and_read_only(
        self, scanner: AuditScanner, legacy_config, settings, home: Path
    ) -> None:
        """Test repeated scans give identical findings and change nothing."""
        (home / "oauth.json").write_text("{}")
        before_config = copy.deepcopy(legacy_config)
        before_files = sorted(p.name for p in home.iterdir())

        first = await scanner.scan(legacy_config, DiskArtifacts.collect(settings))
        second = await scanner.scan(legacy_config, DiskArtifacts.collect(settings))

        assert first.findings == second.findings
        assert legacy_config == before_config
        assert sorted(p.name for p in home.iterdir()) == before_files

    @pytest.mark.asyncio
    async def test_counts(self, scanner: AuditScanner) -> None:
        """Test per-kind counts."""
        report = await scanner.scan({"a": {"token": "t"}, "b": {"password": "p"}})
        assert report.counts()["plaintext-secret"] == 2
        assert report.counts()["unresolved-ref"] == 0


class TestOverlays:
    """Tests for auth-profile overlay parsing."""

    def test_parse_overlays(self) -> None:
        """Test overrides are flattened to field paths."""
        document = {
            "profiles": {
                "work": {"overrides": {"api": {"key": "sk"}, "models.openai.model": "gpt"}},
                "home": {},
            }
        }
        overlays = parse_overlays(document)
        assert [(o.profile, o.field_path) for o in overlays] == [
            ("work", "api.key"),
            ("work", "models.openai.model"),
        ]

    @pytest.mark.parametrize(
        "document",
        [
            [],
            {"profiles": []},
            {"profiles": {"work": "x"}},
            {"profiles": {"work": {"overrides": 1}}},
            {"profiles": {"work": {"overrides": 0}}},
            {"profiles": {"work": {"overrides": []}}},
        ],
    )
    def test_malformed_overlays(self, document) -> None:
        """Test malformed overlay documents raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            parse_overlays(document)

    def test_collect_reads_overlay_file(self, settings) -> None:
        """Test collect reads the configured overlay file."""
        settings.auth_profiles_file.write_text(
            json.dumps({"profiles": {"work": {"overrides": {"api": {"key": "sk"}}}}})
        )
        artifacts = DiskArtifacts.collect(settings)
        assert artifacts.overlays == (OverlayValue(profile="work", field_path="api.key", value="sk"),)
        assert artifacts.legacy_files == ()
