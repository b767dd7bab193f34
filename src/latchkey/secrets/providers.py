"""Provider lookups and the provider registry.

Each provider kind implements the ``ProviderLookup`` protocol:

- ``EnvProvider`` reads environment variables
- ``FileProvider`` reads a JSON secrets file or a single-value file
- ``ExecProvider`` runs a command and reads the value from stdout

The registry maps aliases from ``secrets.providers`` to lookups and
supplies the built-in defaults used by ``env`` and ``file`` references
that name no provider.
"""

import asyncio
import contextlib
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from latchkey.config.settings import Settings
from latchkey.core.logging import get_logger
from latchkey.secrets.protocol import ProviderLookup, ProviderLookupError
from latchkey.secrets.refs import load_providers
from latchkey.secrets.types import ProviderConfig, ProviderKind, SecretSource

logger = get_logger(__name__)

DEFAULT_ALIAS = "default"


class EnvProvider:
    """Provider that reads secrets from environment variables.

    The secret id is the variable name, optionally prefixed:
    with ``prefix="APP_"`` the id ``OPENAI_KEY`` reads ``APP_OPENAI_KEY``.

    Example:
        provider = EnvProvider("env", prefix="APP_")
        value = await provider.lookup("OPENAI_KEY")
    """

    def __init__(
        self,
        alias: str,
        *,
        prefix: str = "",
        allowlist: list[str] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        """Initialize the environment provider.

        Args:
            alias: Alias the provider is registered under
            prefix: Prefix added to every id
            allowlist: If set, only these ids may be read
            environ: Environment mapping (defaults to ``os.environ``)
        """
        self.alias = alias
        self.prefix = prefix
        self.allowlist = set(allowlist) if allowlist is not None else None
        self._environ = environ if environ is not None else os.environ

    async def lookup(self, secret_id: str) -> str | None:
        if self.allowlist is not None and secret_id not in self.allowlist:
            raise ProviderLookupError(self.alias, f"'{secret_id}' is not in the allowlist")
        return self._environ.get(f"{self.prefix}{secret_id}")

    async def close(self) -> None:
        pass


class FileProvider:
    """Provider that reads secrets from a file.

    Modes:
    - ``json``: the file holds a JSON object; the id is a top-level key or
      a JSON pointer such as ``/providers/openai/apiKey``
    - ``singleValue``: the whole file (stripped) is the value; the id must
      be ``value``

    With no ``path`` the id itself is the file to read in single-value form.
    """

    def __init__(self, alias: str, *, path: str | None = None, mode: str = "json"):
        """Initialize the file provider.

        Args:
            alias: Alias the provider is registered under
            path: Secrets file, or None to treat each id as a path
            mode: ``json`` or ``singleValue``
        """
        self.alias = alias
        self.path = Path(path).expanduser() if path else None
        self.mode = mode

    async def lookup(self, secret_id: str) -> str | None:
        if self.path is None:
            return await asyncio.to_thread(self._read_text, Path(secret_id).expanduser())

        if self.mode == "singleValue":
            if secret_id != "value":
                raise ProviderLookupError(
                    self.alias, "single-value file providers only accept the id 'value'"
                )
            return await asyncio.to_thread(self._read_text, self.path)

        document = await asyncio.to_thread(self._read_json, self.path)
        return self._select(document, secret_id)

    async def close(self) -> None:
        pass

    def _read_text(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ProviderLookupError(self.alias, f"cannot read {path}", e) from e

    def _read_json(self, path: Path) -> Any:
        text = self._read_text(path)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ProviderLookupError(self.alias, f"{path} is not valid JSON", e) from e

    def _select(self, document: Any, secret_id: str) -> str | None:
        if secret_id.startswith("/"):
            tokens = [
                token.replace("~1", "/").replace("~0", "~")
                for token in secret_id[1:].split("/")
            ]
        else:
            tokens = [secret_id]

        node = document
        for token in tokens:
            if isinstance(node, Mapping) and token in node:
                node = node[token]
            elif isinstance(node, list) and token.isdigit() and int(token) < len(node):
                node = node[int(token)]
            else:
                return None

        if node is None:
            return None
        if isinstance(node, (Mapping, list)):
            raise ProviderLookupError(self.alias, f"'{secret_id}' does not point at a scalar")
        return str(node)


class ExecProvider:
    """Provider that runs a command to obtain a secret.

    The command is run without a shell, with the secret id appended as the
    final argument. Stdout (stripped) is the value.

    Example:
        provider = ExecProvider("pass", command=["pass", "show"])
        value = await provider.lookup("work/openai")
    """

    def __init__(
        self,
        alias: str,
        *,
        command: list[str],
        timeout_seconds: float = 10.0,
        pass_env: list[str] | None = None,
    ):
        """Initialize the exec provider.

        Args:
            alias: Alias the provider is registered under
            command: Command and leading arguments
            timeout_seconds: Kill the command after this long
            pass_env: If set, only PATH and these variables are passed through
        """
        self.alias = alias
        self.command = list(command)
        self.timeout_seconds = timeout_seconds
        self.pass_env = pass_env

    def _child_env(self) -> dict[str, str] | None:
        if self.pass_env is None:
            return None
        names = {"PATH", *self.pass_env}
        return {name: os.environ[name] for name in names if name in os.environ}

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """Kill the command and reap it, even while being cancelled."""
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await asyncio.shield(process.wait())

    async def lookup(self, secret_id: str) -> str | None:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                secret_id,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._child_env(),
            )
        except OSError as e:
            raise ProviderLookupError(self.alias, f"cannot start {self.command[0]}", e) from e

        try:
            stdout, _stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError as e:
            await self._kill(process)
            raise ProviderLookupError(
                self.alias, f"command timed out after {self.timeout_seconds}s", e
            ) from e
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            # stderr may echo the secret; only the exit status is reported.
            raise ProviderLookupError(
                self.alias, f"command exited with status {process.returncode}"
            )
        return stdout.decode("utf-8", errors="replace").strip()

    async def close(self) -> None:
        pass


def build_provider(config: ProviderConfig, settings: Settings | None = None) -> ProviderLookup:
    """Create the lookup for a registered provider.

    Args:
        config: Provider configuration
        settings: Settings supplying default timeouts

    Returns:
        ProviderLookup for the provider's kind
    """
    metadata = config.metadata
    if config.kind == ProviderKind.ENV:
        return EnvProvider(
            config.alias,
            prefix=metadata.get("prefix", ""),
            allowlist=metadata.get("allowlist"),
        )
    if config.kind == ProviderKind.FILE:
        return FileProvider(
            config.alias,
            path=metadata["path"],
            mode=metadata.get("mode", "json"),
        )
    default_timeout = settings.provider_timeout_seconds if settings else 10.0
    return ExecProvider(
        config.alias,
        command=metadata["command"],
        timeout_seconds=float(metadata.get("timeout_seconds", default_timeout)),
        pass_env=metadata.get("pass_env"),
    )


class ProviderRegistry:
    """Alias-to-lookup registry for one resolution pass.

    Lookups are built lazily and closed together by ``aclose``. A registry
    is cheap and short-lived; every reload, preflight and audit builds its
    own so none of them share state.
    """

    def __init__(
        self,
        providers: Mapping[str, ProviderConfig] | None = None,
        settings: Settings | None = None,
    ):
        self.providers: dict[str, ProviderConfig] = dict(providers or {})
        self.settings = settings
        self._lookups: dict[str, ProviderLookup] = {}
        self._defaults: dict[SecretSource, ProviderLookup] = {
            SecretSource.ENV: EnvProvider(DEFAULT_ALIAS),
            SecretSource.FILE: FileProvider(DEFAULT_ALIAS),
        }

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        settings: Settings | None = None,
    ) -> "ProviderRegistry":
        """Build a registry from a configuration document.

        Raises:
            AliasConflict: If two providers share an alias
            ConfigurationError: If the provider section is malformed
        """
        return cls(load_providers(config), settings)

    @property
    def aliases(self) -> list[str]:
        """Registered aliases in configuration order."""
        return list(self.providers)

    def config_for(self, alias: str) -> ProviderConfig | None:
        """Configuration of a registered provider."""
        return self.providers.get(alias)

    def register(self, alias: str, lookup: ProviderLookup, kind: ProviderKind) -> None:
        """Register a ready-made lookup, e.g. a test double."""
        self.providers[alias] = ProviderConfig.model_construct(alias=alias, kind=kind, metadata={})
        self._lookups[alias] = lookup

    def get(self, alias: str) -> ProviderLookup | None:
        """Lookup for an alias, or None if the alias is not registered."""
        if alias not in self.providers:
            return None
        if alias not in self._lookups:
            self._lookups[alias] = build_provider(self.providers[alias], self.settings)
        return self._lookups[alias]

    def default_for(self, source: SecretSource) -> ProviderLookup | None:
        """Built-in lookup for refs that name no provider."""
        return self._defaults.get(source)

    async def aclose(self) -> None:
        """Close every lookup that was built."""
        for lookup in [*self._lookups.values(), *self._defaults.values()]:
            try:
                await lookup.close()
            except Exception as e:
                logger.warning("provider_close_failed", error=str(e))
        self._lookups.clear()

    async def __aenter__(self) -> "ProviderRegistry":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
