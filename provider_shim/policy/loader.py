"""Configuration loading and validation.

Resolves the shim configuration from four layers and validates the result
against the pydantic schema.  Precedence is the same for every field,
including each individual provider policy field:

    defaults < config file < environment < CLI flags

Errors are always actionable.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from provider_shim.policy.schema import ShimConfig


class ConfigValidationError(Exception):
    """Raised when a config source is malformed or fails validation.

    Attributes:
        source: Where the bad value came from (file path, env var, flag).
        details: Structured error details.
    """

    def __init__(self, source: str, details: list[dict[str, Any]], message: str) -> None:
        self.source = source
        self.details = details
        super().__init__(message)


@dataclass
class CliOverrides:
    """Raw values from the command line.  ``None`` means "flag not given"."""

    config_path: Path | None = None
    host: str | None = None
    port: int | None = None
    merge_mode: str | None = None
    provider_only: str | None = None
    provider_order: str | None = None
    provider_ignore: str | None = None
    sort: str | None = None
    no_fallbacks: bool | None = None
    require_parameters: bool | None = None
    data_collection: str | None = None
    zdr: bool | None = None
    quantizations: str | None = None
    preferred_min_throughput: str | None = None
    preferred_max_latency: str | None = None
    max_price: str | None = None
    auth_mode: str | None = None
    upstream_key: str | None = None
    local_api_key: str | None = None
    enable_responses: bool | None = None
    log_level: str | None = None
    log_body: bool | None = None
    log_path: Path | None = None
    soft_enforce_only: bool | None = None
    remap_model: str | None = None
    debug_upstream_body: bool | None = None
    request_timeout_ms: int | None = None


# ---------------------------------------------------------------------------
# Value parsers (shared by env vars and CLI flags)
# ---------------------------------------------------------------------------


def parse_comma_list(value: str | None) -> list[str] | None:
    """``"a, b,,c"`` → ``["a", "b", "c"]``; blank → None."""
    if value is None or not value.strip():
        return None
    parts = [part.strip() for part in value.split(",") if part.strip()]
    return parts or None


def _parse_json(value: str, source: str) -> Any:
    try:
        return json.loads(value)
    except ValueError as e:
        raise ConfigValidationError(
            source=source,
            details=[{"type": "json_parse_error", "msg": str(e)}],
            message=f"{source} must be valid JSON, got {value!r}: {e}",
        ) from e


def parse_sort(value: str | None, source: str = "sort") -> Any:
    """A bare criterion name or a JSON object like ``{"by": "price"}``."""
    if not value:
        return None
    if value in ("price", "throughput", "latency"):
        return value
    parsed = _parse_json(value, source)
    if not isinstance(parsed, dict) or "by" not in parsed:
        raise ConfigValidationError(
            source=source,
            details=[{"type": "invalid_sort", "got": value}],
            message=(
                f"{source} must be one of price|throughput|latency or a JSON object "
                f'with a "by" key, got {value!r}'
            ),
        )
    return parsed


def parse_threshold(value: str | None, source: str = "threshold") -> Any:
    """A number, or a JSON object of percentiles (``{"p90": 50}``)."""
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return _parse_json(value, source)


def parse_max_price(value: str | None, source: str = "max_price") -> Any:
    if not value:
        return None
    return _parse_json(value, source)


def _parse_int(value: str, source: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ConfigValidationError(
            source=source,
            details=[{"type": "int_parsing", "got": value}],
            message=f"{source} must be an integer, got {value!r}",
        ) from e


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


def load_config_file(path: Path) -> dict[str, Any]:
    """Read a JSON or YAML config file into a mapping.

    Raises:
        FileNotFoundError: If the file doesn't exist (with actionable message).
        ConfigValidationError: If the file cannot be parsed or isn't a mapping.
    """
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found at {path}. "
            f"Check the --config path or omit it to use defaults."
        )

    raw_text = path.read_text(encoding="utf-8")

    # YAML is a superset of JSON, so one parser handles both formats.
    try:
        raw_data = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise ConfigValidationError(
            source=str(path),
            details=[{"type": "parse_error", "msg": str(e)}],
            message=f"Failed to parse config file {path}: {e}",
        ) from e

    if raw_data is None:
        return {}

    if not isinstance(raw_data, dict):
        raise ConfigValidationError(
            source=str(path),
            details=[{"type": "not_a_mapping", "got": type(raw_data).__name__}],
            message=(
                f"Config file {path} must contain a mapping at the top level, "
                f"got {type(raw_data).__name__}."
            ),
        )
    return raw_data


def _env_layer(env: Mapping[str, str]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return (top-level settings, policy fields) read from the environment."""
    settings: dict[str, Any] = {}
    if env.get("SHIM_HOST"):
        settings["host"] = env["SHIM_HOST"]
    if env.get("SHIM_PORT"):
        settings["port"] = _parse_int(env["SHIM_PORT"], "SHIM_PORT")
    if env.get("SHIM_AUTH_MODE"):
        settings["auth_mode"] = env["SHIM_AUTH_MODE"]
    if env.get("OPENROUTER_API_KEY"):
        settings["upstream_api_key"] = env["OPENROUTER_API_KEY"]
    if env.get("SHIM_LOCAL_API_KEY"):
        settings["local_api_key"] = env["SHIM_LOCAL_API_KEY"]
    if env.get("SHIM_MERGE_MODE"):
        settings["merge_mode"] = env["SHIM_MERGE_MODE"]
    if env.get("SHIM_LOG_LEVEL"):
        settings["log_level"] = env["SHIM_LOG_LEVEL"]
    if env.get("SHIM_SOFT_ENFORCE_ONLY"):
        settings["soft_enforce_only"] = _truthy(env["SHIM_SOFT_ENFORCE_ONLY"])
    if env.get("SHIM_REQUEST_TIMEOUT_MS"):
        settings["request_timeout_ms"] = _parse_int(
            env["SHIM_REQUEST_TIMEOUT_MS"], "SHIM_REQUEST_TIMEOUT_MS"
        )
    remap = env.get("SHIM_REMAP_MODEL") or env.get("ANTHROPIC_MODEL")
    if remap:
        settings["remap_model"] = remap

    policy: dict[str, Any] = {}
    for field, var in (
        ("only", "SHIM_PROVIDER_ONLY"),
        ("order", "SHIM_PROVIDER_ORDER"),
        ("ignore", "SHIM_PROVIDER_IGNORE"),
        ("quantizations", "SHIM_PROVIDER_QUANTIZATIONS"),
    ):
        values = parse_comma_list(env.get(var))
        if values is not None:
            policy[field] = values
    if env.get("SHIM_PROVIDER_SORT"):
        policy["sort"] = parse_sort(env["SHIM_PROVIDER_SORT"], "SHIM_PROVIDER_SORT")
    if "SHIM_PROVIDER_ALLOW_FALLBACKS" in env:
        policy["allow_fallbacks"] = env["SHIM_PROVIDER_ALLOW_FALLBACKS"] != "false"
    if "SHIM_PROVIDER_REQUIRE_PARAMETERS" in env:
        policy["require_parameters"] = env["SHIM_PROVIDER_REQUIRE_PARAMETERS"] == "true"
    if env.get("SHIM_PROVIDER_DATA_COLLECTION"):
        policy["data_collection"] = env["SHIM_PROVIDER_DATA_COLLECTION"]
    if "SHIM_PROVIDER_ZDR" in env:
        policy["zdr"] = env["SHIM_PROVIDER_ZDR"] == "true"
    if env.get("SHIM_PROVIDER_PREFERRED_MIN_THROUGHPUT"):
        policy["preferred_min_throughput"] = parse_threshold(
            env["SHIM_PROVIDER_PREFERRED_MIN_THROUGHPUT"],
            "SHIM_PROVIDER_PREFERRED_MIN_THROUGHPUT",
        )
    if env.get("SHIM_PROVIDER_PREFERRED_MAX_LATENCY"):
        policy["preferred_max_latency"] = parse_threshold(
            env["SHIM_PROVIDER_PREFERRED_MAX_LATENCY"],
            "SHIM_PROVIDER_PREFERRED_MAX_LATENCY",
        )
    if env.get("SHIM_PROVIDER_MAX_PRICE"):
        policy["max_price"] = parse_max_price(
            env["SHIM_PROVIDER_MAX_PRICE"], "SHIM_PROVIDER_MAX_PRICE"
        )
    return settings, policy


def _cli_layer(cli: CliOverrides) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return (top-level settings, policy fields) from CLI flags."""
    settings: dict[str, Any] = {}
    for field, value in (
        ("host", cli.host),
        ("port", cli.port),
        ("merge_mode", cli.merge_mode),
        ("auth_mode", cli.auth_mode),
        ("upstream_api_key", cli.upstream_key),
        ("local_api_key", cli.local_api_key),
        ("enable_responses", cli.enable_responses),
        ("log_level", cli.log_level),
        ("log_body", cli.log_body),
        ("soft_enforce_only", cli.soft_enforce_only),
        ("remap_model", cli.remap_model),
        ("debug_upstream_body", cli.debug_upstream_body),
        ("request_timeout_ms", cli.request_timeout_ms),
    ):
        if value is not None:
            settings[field] = value
    if cli.log_path is not None:
        settings["log_path"] = str(cli.log_path)

    policy: dict[str, Any] = {}
    for field, raw in (
        ("only", cli.provider_only),
        ("order", cli.provider_order),
        ("ignore", cli.provider_ignore),
        ("quantizations", cli.quantizations),
    ):
        values = parse_comma_list(raw)
        if values is not None:
            policy[field] = values
    if cli.sort:
        policy["sort"] = parse_sort(cli.sort, "--sort")
    if cli.no_fallbacks is not None:
        policy["allow_fallbacks"] = not cli.no_fallbacks
    if cli.require_parameters is not None:
        policy["require_parameters"] = cli.require_parameters
    if cli.data_collection:
        policy["data_collection"] = cli.data_collection
    if cli.zdr is not None:
        policy["zdr"] = cli.zdr
    if cli.preferred_min_throughput:
        policy["preferred_min_throughput"] = parse_threshold(
            cli.preferred_min_throughput, "--preferred-min-throughput"
        )
    if cli.preferred_max_latency:
        policy["preferred_max_latency"] = parse_threshold(
            cli.preferred_max_latency, "--preferred-max-latency"
        )
    if cli.max_price:
        policy["max_price"] = parse_max_price(cli.max_price, "--max-price")
    return settings, policy


def load_config(
    cli: CliOverrides | None = None,
    env: Mapping[str, str] | None = None,
) -> ShimConfig:
    """Resolve and validate the shim configuration.

    Args:
        cli: Values from command-line flags.
        env: Environment to read (defaults to ``os.environ``).

    Returns:
        A validated, frozen ShimConfig.

    Raises:
        FileNotFoundError: If ``--config`` points at a missing file.
        ConfigValidationError: If any layer is malformed or the merged
            result fails schema validation.
    """
    cli = cli or CliOverrides()
    env = os.environ if env is None else env

    file_data: dict[str, Any] = {}
    if cli.config_path is not None:
        file_data = load_config_file(cli.config_path)

    file_policy = file_data.get("policy") or {}
    if not isinstance(file_policy, dict):
        raise ConfigValidationError(
            source=str(cli.config_path),
            details=[{"type": "not_a_mapping", "loc": ["policy"]}],
            message=f"'policy' in {cli.config_path} must be a mapping.",
        )

    env_settings, env_policy = _env_layer(env)
    cli_settings, cli_policy = _cli_layer(cli)

    raw: dict[str, Any] = {
        **{k: v for k, v in file_data.items() if k != "policy"},
        **env_settings,
        **cli_settings,
        "policy": {**file_policy, **env_policy, **cli_policy},
    }

    try:
        return ShimConfig.model_validate(raw)
    except ValidationError as e:
        error_details = e.errors()
        error_lines = []
        for err in error_details:
            loc = " → ".join(str(part) for part in err["loc"])
            error_lines.append(f"  - {loc}: {err['msg']}")

        summary = "\n".join(error_lines)
        source = str(cli.config_path) if cli.config_path else "configuration"
        raise ConfigValidationError(
            source=source,
            details=error_details,
            message=f"Config validation failed ({source}):\n{summary}",
        ) from e
