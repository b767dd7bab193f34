"""Secret reference resolution.

The resolver turns a mapping of field path to ``SecretRef`` into values
using a provider registry. It holds no state, so every call is a
read-only dry run; deciding what to do with the result is up to the
caller (snapshot manager, preflight, audit).
"""

import asyncio
from collections.abc import Mapping

from pydantic import SecretStr

from latchkey.core.logging import get_logger
from latchkey.secrets.protocol import ProviderLookupError
from latchkey.secrets.providers import ProviderRegistry
from latchkey.secrets.types import (
    FailureCode,
    ProviderKind,
    ResolutionFailure,
    ResolutionResult,
    ResolutionWarning,
    SecretRef,
    SecretSource,
)

logger = get_logger(__name__)

_SOURCE_KINDS = {
    SecretSource.ENV: ProviderKind.ENV,
    SecretSource.FILE: ProviderKind.FILE,
}

_Outcome = SecretStr | ResolutionWarning | ResolutionFailure


class Resolver:
    """Resolves secret references with partial-failure isolation.

    Every reference is resolved independently and concurrently. A failing
    reference never blocks or invalidates another one, and all values that
    could be resolved are returned even when some references hard-fail.

    Example:
        resolver = Resolver()
        async with ProviderRegistry.from_config(config) as registry:
            result = await resolver.resolve(refs, registry)
        if result.hard_failures:
            ...
    """

    def __init__(self, lookup_timeout: float | None = None):
        """Initialize the resolver.

        Args:
            lookup_timeout: Per-reference timeout in seconds (None for no limit)
        """
        self.lookup_timeout = lookup_timeout

    async def resolve(
        self,
        refs: Mapping[str, SecretRef],
        registry: ProviderRegistry,
    ) -> ResolutionResult:
        """Resolve references to values.

        Args:
            refs: Field path to reference
            registry: Providers to resolve against

        Returns:
            ResolutionResult with values, soft warnings and hard failures
        """
        items = sorted(refs.items())
        outcomes = await asyncio.gather(
            *(self._resolve_one(path, ref, registry) for path, ref in items)
        )

        result = ResolutionResult()
        for (path, _ref), outcome in zip(items, outcomes):
            if isinstance(outcome, ResolutionFailure):
                result.hard_failures.append(outcome)
            elif isinstance(outcome, ResolutionWarning):
                result.warnings.append(outcome)
                result.values[path] = None
            else:
                result.values[path] = outcome

        logger.debug(
            "refs_resolved",
            total=len(items),
            resolved=len(result.values) - len(result.warnings),
            warnings=len(result.warnings),
            hard_failures=len(result.hard_failures),
        )
        return result

    def _timeout_for(self, lookup: object) -> float | None:
        # A provider's own timeout (exec commands) is the limit for its lookups.
        own = getattr(lookup, "timeout_seconds", None)
        if self.lookup_timeout is None or own is None:
            return self.lookup_timeout
        return max(self.lookup_timeout, own)

    async def _resolve_one(
        self,
        path: str,
        ref: SecretRef,
        registry: ProviderRegistry,
    ) -> _Outcome:
        if ref.provider is None:
            lookup = registry.default_for(ref.source)
            alias = "default"
        else:
            alias = ref.provider
            lookup = registry.get(alias)
            if lookup is None:
                return ResolutionFailure(
                    field_path=path,
                    code=FailureCode.UNKNOWN_PROVIDER,
                    message=f"Provider '{alias}' is not registered",
                    ref=ref,
                )
            expected_kind = _SOURCE_KINDS.get(ref.source)
            actual = registry.config_for(alias)
            if expected_kind is not None and actual is not None and actual.kind != expected_kind:
                return ResolutionFailure(
                    field_path=path,
                    code=FailureCode.SOURCE_MISMATCH,
                    message=(
                        f"Reference source '{ref.source.value}' cannot use "
                        f"{actual.kind.value} provider '{alias}'"
                    ),
                    ref=ref,
                )

        if lookup is None:
            return ResolutionFailure(
                field_path=path,
                code=FailureCode.UNKNOWN_PROVIDER,
                message=f"No default provider for source '{ref.source.value}'",
                ref=ref,
            )

        timeout = self._timeout_for(lookup)
        try:
            if timeout is not None:
                value = await asyncio.wait_for(lookup.lookup(ref.id), timeout=timeout)
            else:
                value = await lookup.lookup(ref.id)
        except ProviderLookupError as e:
            return ResolutionFailure(
                field_path=path, code=FailureCode.LOOKUP_FAILED, message=str(e), ref=ref
            )
        except TimeoutError:
            return ResolutionFailure(
                field_path=path,
                code=FailureCode.LOOKUP_FAILED,
                message=f"Provider '{alias}' timed out after {timeout}s",
                ref=ref,
            )
        except Exception as e:
            logger.warning("provider_lookup_crashed", alias=alias, error_type=type(e).__name__)
            return ResolutionFailure(
                field_path=path,
                code=FailureCode.LOOKUP_FAILED,
                message=f"Provider '{alias}' raised {type(e).__name__}",
                ref=ref,
            )

        if not value:
            return ResolutionWarning(
                field_path=path,
                ref=ref,
                message=f"Provider '{alias}' has no value for '{ref.id}'",
            )
        return SecretStr(value)
