"""Tests for plan preflight."""

import copy
import json
from pathlib import Path

import pytest

from latchkey.secrets.plan import Plan, PlanBuilder, map_field
from latchkey.secrets.preflight import preflight, project_config
from latchkey.secrets.protocol import PlanValidationFailure, UnresolvedReference
from latchkey.secrets.types import FailureCode, ProviderKind, SecretRef


@pytest.fixture
def keys_file(tmp_path: Path) -> Path:
    path = tmp_path / "keys.json"
    path.write_text(json.dumps({"api": "api-from-file", "openai": "sk-from-file"}))
    return path


@pytest.fixture
def config() -> dict:
    return {
        "api": {"key": "sk-live-123"},
        "models": {"openai": {"apiKey": "sk-openai"}},
    }


class TestProjectConfig:
    """Tests for project_config."""

    def test_projection_applies_plan_to_a_copy(self, config, keys_file: Path, settings) -> None:
        """Test the projection has the changes and the input does not."""
        before = copy.deepcopy(config)
        builder = PlanBuilder(config, settings)
        builder.add_provider("keys", ProviderKind.FILE, {"path": str(keys_file)})
        builder.map_field("api.key", SecretRef(source="file", provider="keys", id="api"))

        projected = project_config(builder.build(), config)

        assert config == before
        assert projected["api"]["key"] == {"source": "file", "provider": "keys", "id": "api"}
        assert projected["secrets"]["providers"] == [
            {"alias": "keys", "kind": "file", "path": str(keys_file)}
        ]

    def test_non_object_target(self) -> None:
        """Test mapping through a scalar is a validation failure."""
        plan = map_field(Plan(), "api.key", SecretRef(source="env", id="K"))
        with pytest.raises(PlanValidationFailure) as exc_info:
            project_config(plan, {"api": "flat-string"})
        assert exc_info.value.failures[0].code == FailureCode.INVALID_PATH


class TestPreflight:
    """Tests for preflight."""

    @pytest.mark.asyncio
    async def test_ok_plan(self, config, keys_file: Path, settings) -> None:
        """Test a resolvable plan passes."""
        builder = PlanBuilder(config, settings)
        builder.add_provider("keys", ProviderKind.FILE, {"path": str(keys_file)})
        builder.map_field("api.key", SecretRef(source="file", provider="keys", id="api"))

        result = await preflight(builder.build(), config, settings=settings)

        assert result.ok
        assert result.hard_failures == []
        assert result.projected_config["api"]["key"]["provider"] == "keys"
        result.raise_for_failures()

    @pytest.mark.asyncio
    async def test_unregistered_provider(self, config, settings) -> None:
        """Test mapping to an unregistered provider fails as unresolved."""
        plan = map_field(
            Plan(), "api.key", SecretRef(source="provider", provider="vault1", id="api-key")
        )
        result = await preflight(plan, config, settings=settings)

        assert not result.ok
        assert result.has_unresolved
        assert [(f.field_path, f.code) for f in result.hard_failures] == [
            ("api.key", FailureCode.UNKNOWN_PROVIDER)
        ]
        with pytest.raises(UnresolvedReference):
            result.raise_for_failures()

    @pytest.mark.asyncio
    async def test_existing_broken_refs_block(self, settings) -> None:
        """Test the whole projected ref set is checked, not just new mappings."""
        config = {
            "api": {"key": "sk-live-123"},
            "db": {"password": {"source": "provider", "provider": "gone", "id": "db"}},
        }
        plan = map_field(Plan(), "api.key", SecretRef(source="env", id="LK_PREFLIGHT_UNSET"))
        result = await preflight(plan, config, settings=settings)

        assert not result.ok
        assert [f.field_path for f in result.hard_failures] == ["db.password"]

    @pytest.mark.asyncio
    async def test_empty_value_is_warning(self, config, settings) -> None:
        """Test soft failures do not block."""
        plan = map_field(Plan(), "api.key", SecretRef(source="env", id="LK_PREFLIGHT_UNSET"))
        result = await preflight(plan, config, settings=settings)
        assert result.ok
        assert result.warning_count == 1

    @pytest.mark.asyncio
    async def test_alias_conflict_in_plan_file(self, settings) -> None:
        """Test a plan adding an existing alias fails validation."""
        config = {"secrets": {"providers": [{"alias": "keys", "kind": "env"}]}}
        plan = Plan.model_validate(
            {"providerChanges": [{"op": "add", "alias": "keys", "kind": "env"}]}
        )
        result = await preflight(plan, config, settings=settings)

        assert not result.ok
        assert not result.has_unresolved
        assert result.hard_failures[0].code == FailureCode.ALIAS_CONFLICT
        with pytest.raises(PlanValidationFailure):
            result.raise_for_failures()

    @pytest.mark.asyncio
    async def test_preflight_is_pure(self, config, settings, home: Path) -> None:
        """Test preflight changes neither the config nor the filesystem."""
        before = copy.deepcopy(config)
        plan = map_field(Plan(), "api.key", SecretRef(source="env", id="LK_PREFLIGHT_UNSET"))

        await preflight(plan, config, settings=settings)
        await preflight(plan, config, settings=settings)

        assert config == before
        assert list(home.iterdir()) == []

    @pytest.mark.asyncio
    async def test_to_dict_has_no_values(self, config, keys_file: Path, settings) -> None:
        """Test the structured result never carries secret values."""
        builder = PlanBuilder(config, settings)
        builder.add_provider("keys", ProviderKind.FILE, {"path": str(keys_file)})
        builder.map_field("api.key", SecretRef(source="file", provider="keys", id="api"))
        result = await preflight(builder.build(), config, settings=settings)

        text = json.dumps(result.to_dict())
        assert "api-from-file" not in text
        assert "sk-live-123" not in text
