"""Persistent configuration storage.

The host configuration is a JSON document. Writes replace the file
atomically (temporary file + rename) with owner-only permissions and
never leave a backup copy behind, so a migrated plaintext value does not
survive in a ``.bak`` file.
"""

import contextlib
import json
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from latchkey.core.logging import get_logger
from latchkey.utils.exceptions import ConfigurationError

logger = get_logger(__name__)


@runtime_checkable
class ConfigStore(Protocol):
    """Protocol for reading and writing the host configuration."""

    def read(self) -> dict[str, Any]:
        """Read the configuration document.

        Raises:
            ConfigurationError: If the document cannot be parsed
        """
        ...

    def write(self, document: Mapping[str, Any]) -> None:
        """Persist the configuration document, replacing the previous one."""
        ...


class JsonConfigStore:
    """Configuration stored as a JSON file.

    A missing file reads as an empty document.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def exists(self) -> bool:
        """Whether the configuration file exists."""
        return self.path.is_file()

    def read(self) -> dict[str, Any]:
        if not self.exists():
            return {}
        document = read_json_file(self.path)
        if not isinstance(document, dict):
            raise ConfigurationError(f"{self.path} must contain a JSON object")
        return document

    def write(self, document: Mapping[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                os.chmod(tmp_name, 0o600)
                json.dump(document, handle, indent=2)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
        logger.debug("config_written", path=str(self.path))


def read_json_file(path: Path) -> Any:
    """Read and parse a JSON file.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e.strerror}") from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        # Position only; the message must not echo file content.
        raise ConfigurationError(
            f"{path} is not valid JSON (line {e.lineno}, column {e.colno})"
        ) from None
