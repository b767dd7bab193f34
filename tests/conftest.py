"""Pytest fixtures for Latchkey tests."""

import json
import sys
from collections.abc import Generator, Iterable
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
import structlog

from latchkey.cli.prompts import PromptAborted, Prompter
from latchkey.config.settings import Settings, get_settings
from latchkey.secrets.protocol import ProviderLookupError
from latchkey.secrets.providers import EnvProvider, ProviderRegistry
from latchkey.secrets.store import JsonConfigStore
from latchkey.secrets.types import ProviderKind


# =============================================================================
# Structlog Configuration Fixture
# =============================================================================


def _stderr_print_logger(*args: Any) -> structlog.PrintLogger:
    # Looked up per logger so pytest's capture of sys.stderr is honoured.
    return structlog.PrintLogger(file=sys.stderr)


def _configure_test_structlog() -> None:
    structlog.reset_defaults()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=_stderr_print_logger,
        cache_logger_on_first_use=False,
    )


@pytest.fixture(scope="function", autouse=True)
def reset_structlog_after_test():
    """Reset structlog configuration around each test.

    This ensures tests that modify structlog global state
    don't affect other tests, and that log lines stay off stdout
    where commands print their JSON output.
    """
    _configure_test_structlog()
    yield
    _configure_test_structlog()


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Generator[None, None, None]:
    """Drop cached settings so environment changes in one test don't leak."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Settings and Filesystem Fixtures
# =============================================================================


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Empty state directory."""
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def settings(home: Path) -> Settings:
    """Settings rooted at the temporary state directory."""
    return Settings(environment="test", home=home, provider_timeout_seconds=2.0)


@pytest.fixture
def patch_settings(settings: Settings) -> Generator[Settings, None, None]:
    """Patch get_settings to return the test settings."""
    with (
        patch("latchkey.config.settings.get_settings", return_value=settings),
        patch("latchkey.core.logging.get_settings", return_value=settings),
    ):
        yield settings


@pytest.fixture
def write_config(settings: Settings):
    """Write a configuration document to the settings' config file."""

    def _write(document: dict[str, Any]) -> Path:
        path = settings.config_file
        path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def read_config(settings: Settings):
    """Read the configuration document back from disk."""

    def _read() -> dict[str, Any]:
        return JsonConfigStore(settings.config_file).read()

    return _read


@pytest.fixture
def legacy_config() -> dict[str, Any]:
    """A configuration still holding plaintext secrets."""
    return {
        "api": {"key": "sk-live-plaintext-123", "url": "https://api.example.com"},
        "models": {
            "openai": {"apiKey": "sk-openai-plaintext", "model": "gpt-4o"},
            "anthropic": {"apiKey": {"source": "env", "id": "LATCHKEY_TEST_ANTHROPIC"}},
        },
        "gateway": {"port": 8080},
    }


# =============================================================================
# Test Doubles
# =============================================================================


class FakeLookup:
    """In-memory provider lookup that records calls."""

    def __init__(
        self,
        values: dict[str, str] | None = None,
        fail: set[str] | None = None,
        alias: str = "fake",
    ):
        self.values = dict(values or {})
        self.fail = set(fail or ())
        self.alias = alias
        self.calls: list[str] = []
        self.closed = False

    async def lookup(self, secret_id: str) -> str | None:
        self.calls.append(secret_id)
        if secret_id in self.fail:
            raise ProviderLookupError(self.alias, f"backend unavailable for {secret_id}")
        return self.values.get(secret_id)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_lookup() -> FakeLookup:
    """Fake lookup with two known secrets and one failing id."""
    return FakeLookup(
        values={"openai": "sk-from-vault", "api": "api-from-vault"},
        fail={"broken"},
        alias="vault",
    )


@pytest.fixture
def registry(fake_lookup: FakeLookup) -> ProviderRegistry:
    """Registry with the fake lookup as ``vault`` and an env provider as ``env``."""
    registry = ProviderRegistry()
    registry.register("vault", fake_lookup, ProviderKind.EXEC)
    registry.register(
        "env",
        EnvProvider("env", environ={"OPENAI_KEY": "sk-env", "EMPTY_KEY": ""}),
        ProviderKind.ENV,
    )
    return registry


class ScriptedPrompter(Prompter):
    """Prompter answering from a fixed script."""

    def __init__(self, answers: Iterable[str]):
        super().__init__()
        self._answers = list(answers)
        self.asked: list[str] = []
        self.messages: list[str] = []

    def say(self, message: str) -> None:
        self.messages.append(message)

    def ask(self, prompt: str, default: str | None = None) -> str:
        self.asked.append(prompt)
        if not self._answers:
            raise PromptAborted(f"no scripted answer for: {prompt}")
        answer = self._answers.pop(0).strip()
        return answer or (default or "")


@pytest.fixture
def scripted_prompter() -> type[ScriptedPrompter]:
    """Factory for prompters that answer from a list."""
    return ScriptedPrompter
