"""Pydantic v2 models for the shim configuration.

Defines the provider routing policy injected into every forwarded request
and the fully resolved server configuration handed to the proxy.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from provider_shim import __version__

OPENROUTER_BASE_V1 = "https://openrouter.ai/api/v1"


class MergeMode(str, Enum):
    """How the configured policy combines with a client's ``provider`` object.

    MERGE:    Client fields win, missing fields are filled from the policy.
    OVERRIDE: The client's object is discarded and replaced by the policy.
    STRICT:   Any client field that disagrees with the policy rejects the
              request; otherwise behaves like MERGE.
    """

    MERGE = "merge"
    OVERRIDE = "override"
    STRICT = "strict"


class AuthMode(str, Enum):
    """Where the upstream credential comes from."""

    PASSTHROUGH = "passthrough"
    UPSTREAM_KEY = "upstream-key"


class LogLevel(str, Enum):
    SILENT = "silent"
    ERROR = "error"
    INFO = "info"
    DEBUG = "debug"


class Upstream(str, Enum):
    OPENROUTER = "openrouter"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


SortCriterion = Literal["price", "throughput", "latency"]


class SortSpec(_Frozen):
    """Partitioned sort criterion: ``{"by": "price", "partition": "model"}``."""

    by: SortCriterion
    partition: Literal["model", "none"] | None = None


class PercentileThreshold(_Frozen):
    """Per-percentile threshold for throughput or latency preferences."""

    p50: float | None = None
    p75: float | None = None
    p90: float | None = None
    p99: float | None = None


class MaxPrice(_Frozen):
    """Maximum price per million tokens."""

    prompt: float | None = None
    completion: float | None = None
    total: float | None = None


Threshold = Union[float, PercentileThreshold]


class ProviderPolicy(_Frozen):
    """Server-side provider routing preferences.

    Every field is optional and ``None`` means "not set". Only set fields
    are injected into requests and only set fields take part in strict-mode
    conflict checks. Instances are frozen and shared read-only by all
    request handlers.
    """

    order: list[str] | None = None
    only: list[str] | None = None
    ignore: list[str] | None = None
    allow_fallbacks: bool | None = None
    require_parameters: bool | None = None
    data_collection: Literal["allow", "deny"] | None = None
    zdr: bool | None = None
    enforce_distillable_text: bool | None = None
    quantizations: list[str] | None = None
    sort: SortCriterion | SortSpec | None = None
    preferred_min_throughput: Threshold | None = None
    preferred_max_latency: Threshold | None = None
    max_price: MaxPrice | None = None

    def as_routing_object(self) -> dict[str, Any]:
        """Return a fresh JSON-compatible dict holding only the set fields."""
        return self.model_dump(mode="json", exclude_none=True)

    def is_empty(self) -> bool:
        """True when no field is set."""
        return not self.as_routing_object()


# Enumerated policy fields, in declaration order.  Merging and conflict
# checks iterate this tuple rather than whatever keys happen to be present.
POLICY_FIELDS: tuple[str, ...] = tuple(ProviderPolicy.model_fields)


class Attribution(_Frozen):
    """Optional OpenRouter app attribution headers."""

    referer: str | None = None
    title: str | None = None


class ShimConfig(_Frozen):
    """Fully resolved configuration for one shim process.

    Built by :func:`provider_shim.policy.loader.load_config` and never
    modified afterwards.
    """

    host: str = "127.0.0.1"
    port: int = Field(default=8787, ge=0, le=65535)
    upstream: Upstream = Upstream.OPENROUTER
    upstream_base_url: str = OPENROUTER_BASE_V1

    enable_anthropic: bool = True
    enable_chat: bool = True
    enable_responses: bool = True

    auth_mode: AuthMode = AuthMode.PASSTHROUGH
    upstream_api_key: str | None = None
    local_api_key: str | None = None

    merge_mode: MergeMode = MergeMode.MERGE
    policy: ProviderPolicy = Field(default_factory=ProviderPolicy)
    soft_enforce_only: bool = Field(
        default=False,
        description="Intersect provider.only lists instead of letting the "
        "client's list replace the policy's.",
    )

    request_timeout_ms: int = Field(default=600_000, gt=0)
    end_to_end_timeout_ms: int | None = Field(
        default=None,
        gt=0,
        description="Upper bound on a whole dispatch including retry waits. "
        "None means only the per-attempt timeout applies.",
    )
    max_body_bytes: int = Field(default=50 * 1024 * 1024, gt=0)

    add_attribution_headers: bool = False
    attribution: Attribution | None = None

    remap_model: str | None = Field(
        default=None,
        description="Target model for helper-model requests (e.g. claude-haiku). "
        "None disables remapping.",
    )

    log_level: LogLevel = LogLevel.INFO
    log_body: bool = False
    redact_body: bool = True
    log_path: str | None = None

    debug_upstream_body: bool = False
    version: str = __version__

    def safe_dump(self) -> dict[str, Any]:
        """Config as JSON-compatible dict with every credential removed."""
        return self.model_dump(
            mode="json",
            exclude={"upstream_api_key", "local_api_key"},
        )
