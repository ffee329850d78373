"""Provider policy merge engine.

Combines the configured :class:`ProviderPolicy` with the ``provider``
object a client put in its request body.  Pure: no I/O, no state, and the
caller's body is never mutated, so the inbound payload stays available
for logging.
"""

from __future__ import annotations

import copy
from typing import Any

from provider_shim.policy.schema import POLICY_FIELDS, MergeMode, ProviderPolicy


class PolicyConflictError(Exception):
    """Raised in strict mode when a client field disagrees with the policy.

    Attributes:
        field: The ``provider`` field that conflicted.
        code: Stable error code surfaced to HTTP clients.
    """

    code = "ERR_PROVIDER_CONFLICT"

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"provider.{field} conflicts with enforced policy")


def values_equal(a: Any, b: Any) -> bool:
    """Deep JSON value equality.

    Numbers compare by value (``1 == 1.0``) but booleans only equal
    booleans, matching how the values would serialize on the wire.
    """
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, list) and isinstance(b, list):
        if len(a) != len(b):
            return False
        return all(values_equal(x, y) for x, y in zip(a, b))
    return type(a) is type(b) and a == b


def intersect_only(policy_only: list[str], client_only: list[str]) -> list[str]:
    """Client's allow-list filtered to providers the policy also allows."""
    allowed = set(policy_only)
    return [name for name in client_only if name in allowed]


def find_conflict(policy_obj: dict[str, Any], client_obj: dict[str, Any]) -> str | None:
    """Return the first policy field the client set to a different value.

    Fields the policy leaves unset never conflict, and fields absent from
    the client object are filled in later, so neither is checked.  An
    explicit JSON ``null`` from the client counts as set.
    """
    for field in POLICY_FIELDS:
        if field not in policy_obj or field not in client_obj:
            continue
        if not values_equal(policy_obj[field], client_obj[field]):
            return field
    return None


def _layer(
    policy_obj: dict[str, Any],
    client_obj: dict[str, Any],
    soft_enforce_only: bool,
) -> dict[str, Any]:
    merged = {**policy_obj, **copy.deepcopy(client_obj)}
    if soft_enforce_only:
        policy_only = policy_obj.get("only")
        client_only = client_obj.get("only")
        if policy_only and client_only:
            merged["only"] = intersect_only(policy_only, client_only)
    return merged


def apply_provider_policy(
    body: dict[str, Any],
    policy: ProviderPolicy,
    mode: MergeMode,
    soft_enforce_only: bool = False,
) -> dict[str, Any]:
    """Inject the routing policy into a request body.

    Args:
        body: Parsed JSON request body.  Never mutated.
        policy: The configured policy.
        mode: Merge mode for this server instance.
        soft_enforce_only: Intersect ``only`` lists instead of letting the
            client's list replace the policy's.

    Returns:
        ``body`` itself when the policy is empty, otherwise a new dict whose
        ``provider`` key holds the merged routing object.

    Raises:
        PolicyConflictError: In strict mode, when a client field conflicts
            with a set policy field (or ``provider`` is not an object).
    """
    policy_obj = policy.as_routing_object()
    if not policy_obj:
        return body

    out = {k: v for k, v in body.items() if k != "provider"}
    client_obj = body.get("provider")

    if client_obj is None or mode == MergeMode.OVERRIDE:
        out["provider"] = policy_obj
        return out

    if not isinstance(client_obj, dict):
        raise PolicyConflictError("provider")

    if mode == MergeMode.STRICT:
        field = find_conflict(policy_obj, client_obj)
        if field is not None:
            raise PolicyConflictError(field)

    out["provider"] = _layer(policy_obj, client_obj, soft_enforce_only)
    return out
