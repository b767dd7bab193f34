"""Transport-agnostic RPC handlers for the secrets runtime.

The host's RPC layer decodes a request, calls ``dispatch`` and encodes
the returned dictionary. Handlers never raise for expected failures;
they report them in the response body.
"""

from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from latchkey.core.logging import get_logger
from latchkey.secrets.protocol import SecretsError
from latchkey.secrets.runtime import SecretsRuntime
from latchkey.utils.exceptions import ConfigurationError, LatchkeyError

logger = get_logger(__name__)

RELOAD_METHOD = "secrets.reload"

Handler = Callable[[SecretsRuntime, Mapping[str, Any]], Awaitable[dict[str, Any]]]


class UnknownMethodError(LatchkeyError):
    """Raised when no handler exists for an RPC method."""

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Unknown RPC method: {method}")


def error_body(error: Exception) -> dict[str, Any]:
    """Response body for a failed call."""
    if isinstance(error, SecretsError):
        detail = error.to_dict()
    else:
        detail = {"type": type(error).__name__, "message": str(error)}
    detail.setdefault("failures", [])
    return {"ok": False, "error": detail}


async def handle_reload(
    runtime: SecretsRuntime, params: Mapping[str, Any] | None = None
) -> dict[str, Any]:
    """Handle ``secrets.reload``.

    Returns:
        ``{"ok": true, "warningCount": n, "version": v}`` on success, or
        ``{"ok": false, "error": {...}}`` if the reload failed; in that case
        the previous snapshot is still current
    """
    try:
        result = await runtime.reload()
    except (SecretsError, ConfigurationError) as e:
        logger.warning("rpc_reload_failed", error_type=type(e).__name__)
        return error_body(e)
    return result.to_dict()


HANDLERS: dict[str, Handler] = {
    RELOAD_METHOD: handle_reload,
}


async def dispatch(
    runtime: SecretsRuntime,
    method: str,
    params: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Route an RPC call to its handler.

    Raises:
        UnknownMethodError: If ``method`` has no handler
    """
    handler = HANDLERS.get(method)
    if handler is None:
        raise UnknownMethodError(method)
    logger.debug("rpc_dispatch", method=method)
    return await handler(runtime, params or {})
