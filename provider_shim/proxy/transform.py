"""Request body rewrites applied before the routing policy merge.

Each rewrite reflects a quirk of one client family and is a no-op when its
condition doesn't match.  They always run in the same order:

  1. streaming disable  (Anthropic messages only)
  2. helper model remap (e.g. Claude Code's haiku background calls)
  3. metadata.user_id truncation

and then :func:`apply_provider_policy` runs on the result.
"""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any

from provider_shim.policy.merge import apply_provider_policy
from provider_shim.policy.schema import ShimConfig

# Model names Claude Code uses for cheap background work (titles, summaries).
HELPER_MODEL_PREFIXES: tuple[str, ...] = (
    "claude-haiku",
    "claude-3-haiku",
    "claude-3-5-haiku",
    "claude-3.5-haiku",
    "anthropic/claude-haiku",
    "anthropic/claude-3-haiku",
    "anthropic/claude-3.5-haiku",
)

# OpenRouter rejects metadata.user_id longer than this.
MAX_USER_ID_LENGTH = 128


class EndpointFamily(str, Enum):
    """Client-facing protocol shape, derived from the request path."""

    ANTHROPIC_MESSAGES = "anthropic_messages"
    CHAT_COMPLETIONS = "chat_completions"
    RESPONSES = "responses"
    MODELS = "models"


_FAMILY_PATHS: dict[str, EndpointFamily] = {
    "/v1/messages": EndpointFamily.ANTHROPIC_MESSAGES,
    "/v1/chat/completions": EndpointFamily.CHAT_COMPLETIONS,
    "/v1/responses": EndpointFamily.RESPONSES,
    "/v1/models": EndpointFamily.MODELS,
}


def detect_family(path: str) -> EndpointFamily | None:
    """Map a request path to its endpoint family, or None if not forwarded."""
    return _FAMILY_PATHS.get(path)


def family_path(family: EndpointFamily) -> str:
    """Inbound path served by an endpoint family."""
    for path, candidate in _FAMILY_PATHS.items():
        if candidate == family:
            return path
    raise KeyError(family)


def is_helper_model(model: Any) -> bool:
    return isinstance(model, str) and model.startswith(HELPER_MODEL_PREFIXES)


def _disable_streaming(body: dict[str, Any], family: EndpointFamily) -> None:
    if family == EndpointFamily.ANTHROPIC_MESSAGES and body.get("stream"):
        body["stream"] = False


def _remap_model(body: dict[str, Any], target: str | None) -> None:
    if not target:
        return
    model = body.get("model")
    if model != target and is_helper_model(model):
        body["model"] = target


def _truncate_user_id(body: dict[str, Any]) -> None:
    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        return
    user_id = metadata.get("user_id")
    if isinstance(user_id, str) and len(user_id) > MAX_USER_ID_LENGTH:
        metadata["user_id"] = user_id[:MAX_USER_ID_LENGTH]


def transform_request(
    body: dict[str, Any],
    config: ShimConfig,
    family: EndpointFamily,
) -> dict[str, Any]:
    """Apply the client-quirk rewrites to a copy of ``body``."""
    out = copy.deepcopy(body)
    _disable_streaming(out, family)
    _remap_model(out, config.remap_model)
    _truncate_user_id(out)
    return out


def transform_and_merge(
    body: dict[str, Any],
    config: ShimConfig,
    family: EndpointFamily,
) -> dict[str, Any]:
    """Rewrite the body and inject the routing policy.

    Args:
        body: Parsed inbound JSON body.  Never mutated.
        config: Resolved shim configuration.
        family: Endpoint family the request arrived on.

    Returns:
        The body to forward upstream.

    Raises:
        PolicyConflictError: In strict mode, when the client's ``provider``
            object conflicts with the configured policy.
    """
    out = transform_request(body, config, family)
    out = apply_provider_policy(
        out, config.policy, config.merge_mode, config.soft_enforce_only
    )

    # Development aid: ask OpenRouter to echo the body it sent to the provider.
    if config.debug_upstream_body and family == EndpointFamily.CHAT_COMPLETIONS:
        debug = out.get("debug")
        out = {
            **out,
            "stream": True,
            "debug": {**(debug if isinstance(debug, dict) else {}), "echo_upstream_body": True},
        }
    return out
