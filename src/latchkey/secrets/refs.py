"""Reference model helpers for configuration documents.

A configuration document is a nested JSON object. Secret references are
stored inline as ``{"source": ..., "provider": ..., "id": ...}`` objects
and providers are listed under ``secrets.providers``.

Field paths are dot-separated object keys (``models.openai.apiKey``);
list elements are reported as ``name[i]`` while walking but cannot be the
target of a mapping.
"""

from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from pydantic import ValidationError

from latchkey.secrets.protocol import AliasConflict
from latchkey.secrets.types import (
    REF_KEYS,
    FailureCode,
    FieldEntry,
    ProviderConfig,
    ResolutionFailure,
    SecretRef,
)
from latchkey.utils.exceptions import ConfigurationError

SECRETS_ROOT = "secrets"
PROVIDERS_PATH = "secrets.providers"


def normalize_key(key: str) -> str:
    """Lowercase a key and drop ``_`` / ``-`` separators."""
    return key.lower().replace("_", "").replace("-", "")


def is_secret_field(path: str, secret_field_names: Iterable[str]) -> bool:
    """Whether the last key of ``path`` names a secret-bearing field."""
    last = path.rsplit(".", 1)[-1]
    if "[" in last:
        last = last[: last.index("[")]
    key = normalize_key(last)
    return any(key.endswith(name) for name in secret_field_names)


def is_ref_shaped(value: Any) -> bool:
    """Whether a config value has the shape of a secret reference."""
    return (
        isinstance(value, Mapping)
        and "source" in value
        and "id" in value
        and set(value.keys()) <= REF_KEYS
    )


def parse_ref(value: Any) -> SecretRef | None:
    """Parse a ref-shaped value.

    Returns:
        The reference, or None if the value is not ref-shaped

    Raises:
        ValidationError: If the value is ref-shaped but invalid
    """
    if not is_ref_shaped(value):
        return None
    return SecretRef.model_validate(dict(value))


def walk(
    config: Mapping[str, Any],
    secret_field_names: Iterable[str] = (),
) -> Iterator[FieldEntry]:
    """Yield every leaf of a configuration document.

    Reference objects are yielded as a single leaf with ``ref`` set; a
    malformed reference is yielded as a leaf with ``ref`` None.
    """
    names = tuple(secret_field_names)
    yield from _walk(config, "", names)


def _walk(node: Any, prefix: str, names: tuple[str, ...]) -> Iterator[FieldEntry]:
    if isinstance(node, Mapping):
        children = (
            (f"{prefix}.{key}" if prefix else str(key), value) for key, value in node.items()
        )
    else:
        children = ((f"{prefix}[{index}]", value) for index, value in enumerate(node))

    for path, value in children:
        if isinstance(value, (Mapping, list)) and not is_ref_shaped(value):
            yield from _walk(value, path, names)
        else:
            yield _leaf(path, value, names)


def _leaf(path: str, value: Any, names: tuple[str, ...]) -> FieldEntry:
    ref = None
    if is_ref_shaped(value):
        try:
            ref = parse_ref(value)
        except ValidationError:
            ref = None
    return FieldEntry(path, value, is_secret_field(path, names), ref)


def collect_refs(
    config: Mapping[str, Any],
) -> tuple[dict[str, SecretRef], list[ResolutionFailure]]:
    """Collect every reference in a configuration document.

    Returns:
        Tuple of (field path to reference, failures for malformed references)
    """
    refs: dict[str, SecretRef] = {}
    invalid: list[ResolutionFailure] = []
    for entry in walk(config):
        if entry.ref is not None:
            refs[entry.path] = entry.ref
        elif is_ref_shaped(entry.value):
            invalid.append(
                ResolutionFailure(
                    field_path=entry.path,
                    code=FailureCode.INVALID_REF,
                    message="Malformed secret reference",
                )
            )
    return refs, invalid


def split_path(path: str) -> list[str]:
    """Split a mapping target path into object keys.

    Raises:
        ValueError: If the path is empty or addresses a list element
    """
    if not path or not path.strip():
        raise ValueError("Field path cannot be empty")
    parts = path.split(".")
    for part in parts:
        if not part:
            raise ValueError(f"Field path has an empty segment: {path}")
        if "[" in part or "]" in part:
            raise ValueError(f"Field path cannot address list elements: {path}")
    return parts


def get_path(config: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Read a value by field path, returning ``default`` if absent."""
    node: Any = config
    for part in split_path(path):
        if not isinstance(node, Mapping) or part not in node:
            return default
        node = node[part]
    return node


def set_path(config: dict[str, Any], path: str, value: Any) -> None:
    """Write a value by field path, creating intermediate objects.

    Raises:
        ValueError: If an intermediate value is not an object
    """
    parts = split_path(path)
    node = config
    for part in parts[:-1]:
        child = node.get(part)
        if child is None:
            child = {}
            node[part] = child
        elif not isinstance(child, dict):
            raise ValueError(f"Cannot set {path}: '{part}' is not an object")
        node = child
    node[parts[-1]] = value


def load_providers(config: Mapping[str, Any]) -> dict[str, ProviderConfig]:
    """Read the provider registry from ``secrets.providers``.

    Returns:
        Providers keyed by alias, in configuration order

    Raises:
        AliasConflict: If two entries share an alias
        ConfigurationError: If the section or an entry is malformed
    """
    secrets_section = config.get(SECRETS_ROOT) or {}
    if not isinstance(secrets_section, Mapping):
        raise ConfigurationError(f"'{SECRETS_ROOT}' must be an object")
    entries = secrets_section.get("providers") or []
    if not isinstance(entries, list):
        raise ConfigurationError(f"'{PROVIDERS_PATH}' must be a list")

    providers: dict[str, ProviderConfig] = {}
    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            raise ConfigurationError(f"{PROVIDERS_PATH}[{index}] must be an object")
        try:
            provider = ProviderConfig.from_entry(entry)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid provider at {PROVIDERS_PATH}[{index}]: {_first_error(e)}"
            ) from e
        if provider.alias in providers:
            raise AliasConflict(provider.alias)
        providers[provider.alias] = provider
    return providers


def store_providers(config: dict[str, Any], providers: Mapping[str, ProviderConfig]) -> None:
    """Write the provider registry back into ``secrets.providers``."""
    set_path(config, PROVIDERS_PATH, [provider.to_entry() for provider in providers.values()])


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return str(error)
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
