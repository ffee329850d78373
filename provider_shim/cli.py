"""provider-shim CLI entry point.

Provides the `provider-shim` command with subcommands:
  - serve: Start the local shim server (default when no subcommand given)
  - doctor: Validate config and check connectivity to OpenRouter
  - print-env: Print environment snippets for agent harnesses
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Optional

import typer
from rich.console import Console

from provider_shim import __version__

if TYPE_CHECKING:
    from provider_shim.policy.loader import CliOverrides
    from provider_shim.policy.schema import ShimConfig

app = typer.Typer(
    name="provider-shim",
    help="Local shim for OpenRouter provider routing (Claude Code + OpenAI-compatible harnesses).",
)

_console = Console(stderr=True)

_DEFAULT_MODEL_HINT = "moonshotai/kimi-k2.5"


def _version_callback(value: bool) -> None:
    if value:
        _console.print(f"provider-shim {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """provider-shim: inject OpenRouter provider routing into agent traffic."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


def _flag(value: bool) -> bool | None:
    """Map an unset boolean flag to None so lower config layers still apply."""
    return True if value else None


def _load(overrides: CliOverrides) -> ShimConfig:
    """Resolve config, printing actionable errors and exiting on failure."""
    from provider_shim.policy.loader import ConfigValidationError, load_config

    try:
        return load_config(overrides)
    except FileNotFoundError as e:
        _console.print(f"[bold red]Error:[/bold red] {e}", highlight=False)
        raise typer.Exit(1) from None
    except ConfigValidationError as e:
        _console.print(f"[bold red]Config error:[/bold red] {e}", highlight=False)
        raise typer.Exit(1) from None


@app.command()
def serve(
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to a JSON or YAML config file."),
    ] = None,
    host: Annotated[Optional[str], typer.Option("--host", help="Host to bind (default: 127.0.0.1).")] = None,
    port: Annotated[Optional[int], typer.Option("--port", help="Port to bind (default: 8787).")] = None,
    merge_mode: Annotated[
        Optional[str],
        typer.Option("--merge-mode", help="Provider merge mode: merge|override|strict."),
    ] = None,
    provider_only: Annotated[
        Optional[str],
        typer.Option("--provider-only", help="Comma-separated list of allowed providers (e.g. fireworks)."),
    ] = None,
    provider_order: Annotated[
        Optional[str],
        typer.Option("--provider-order", help="Comma-separated provider priority order."),
    ] = None,
    provider_ignore: Annotated[
        Optional[str],
        typer.Option("--provider-ignore", help="Comma-separated list of providers to skip."),
    ] = None,
    sort: Annotated[
        Optional[str],
        typer.Option("--sort", help='Sort providers by price|throughput|latency, or JSON {"by": ..., "partition": ...}.'),
    ] = None,
    no_fallbacks: Annotated[bool, typer.Option("--no-fallbacks", help="Disable fallback providers.")] = False,
    require_parameters: Annotated[
        bool,
        typer.Option("--require-parameters", help="Require providers to support all request parameters."),
    ] = False,
    data_collection: Annotated[
        Optional[str],
        typer.Option("--data-collection", help="Provider data collection policy: allow|deny."),
    ] = None,
    zdr: Annotated[bool, typer.Option("--zdr", help="Only use Zero Data Retention endpoints.")] = False,
    quantizations: Annotated[
        Optional[str],
        typer.Option("--quantizations", help="Comma-separated quantizations (fp8,int8,...)."),
    ] = None,
    preferred_min_throughput: Annotated[
        Optional[str],
        typer.Option(
            "--preferred-min-throughput",
            help="Preferred minimum throughput (number or JSON with p50/p75/p90/p99).",
        ),
    ] = None,
    preferred_max_latency: Annotated[
        Optional[str],
        typer.Option(
            "--preferred-max-latency",
            help="Preferred maximum latency in seconds (number or JSON).",
        ),
    ] = None,
    max_price: Annotated[
        Optional[str],
        typer.Option("--max-price", help='Max price as JSON: {"prompt":1.0,"completion":4.0}.'),
    ] = None,
    auth_mode: Annotated[
        Optional[str],
        typer.Option("--auth-mode", help="Upstream authentication: passthrough|upstream-key."),
    ] = None,
    upstream_key: Annotated[
        Optional[str],
        typer.Option("--upstream-key", help="OpenRouter API key (prefer env OPENROUTER_API_KEY)."),
    ] = None,
    local_api_key: Annotated[
        Optional[str],
        typer.Option("--local-api-key", help="Require inbound requests to present this key."),
    ] = None,
    enable_responses: Annotated[
        Optional[bool],
        typer.Option(
            "--enable-responses/--disable-responses",
            help="Enable or disable the /v1/responses endpoint.",
        ),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Log level: silent|error|info|debug."),
    ] = None,
    log_body: Annotated[
        bool,
        typer.Option("--log-body", help="Log request bodies at debug level (redacted by default)."),
    ] = False,
    log: Annotated[
        Optional[Path],
        typer.Option("--log", "-l", help="Path to write a JSON Lines request log."),
    ] = None,
    soft_enforce_only: Annotated[
        bool,
        typer.Option("--soft-enforce-only", help="Intersect provider.only lists instead of replacing."),
    ] = False,
    remap_model: Annotated[
        Optional[str],
        typer.Option("--remap-model", help="Model to use for Claude Code helper (haiku) requests."),
    ] = None,
    request_timeout_ms: Annotated[
        Optional[int],
        typer.Option("--request-timeout-ms", help="Per-attempt upstream timeout in milliseconds."),
    ] = None,
    debug_upstream_body: Annotated[
        bool,
        typer.Option(
            "--debug-upstream-body",
            help="Ask OpenRouter to echo the upstream body (chat completions, development only).",
        ),
    ] = False,
) -> None:
    """Start the local shim server."""
    from provider_shim.audit.logger import AuditLogger
    from provider_shim.policy.loader import CliOverrides
    from provider_shim.proxy.server import ShimProxy

    cfg = _load(
        CliOverrides(
            config_path=config,
            host=host,
            port=port,
            merge_mode=merge_mode,
            provider_only=provider_only,
            provider_order=provider_order,
            provider_ignore=provider_ignore,
            sort=sort,
            no_fallbacks=_flag(no_fallbacks),
            require_parameters=_flag(require_parameters),
            data_collection=data_collection,
            zdr=_flag(zdr),
            quantizations=quantizations,
            preferred_min_throughput=preferred_min_throughput,
            preferred_max_latency=preferred_max_latency,
            max_price=max_price,
            auth_mode=auth_mode,
            upstream_key=upstream_key,
            local_api_key=local_api_key,
            enable_responses=enable_responses,
            log_level=log_level,
            log_body=_flag(log_body),
            log_path=log,
            soft_enforce_only=_flag(soft_enforce_only),
            remap_model=remap_model,
            debug_upstream_body=_flag(debug_upstream_body),
            request_timeout_ms=request_timeout_ms,
        )
    )

    audit_logger = AuditLogger.from_config(cfg)
    proxy = ShimProxy(cfg, audit_logger=audit_logger)
    try:
        asyncio.run(proxy.run())
    except KeyboardInterrupt:
        pass  # Handled by signal handler in proxy
    except OSError:
        raise typer.Exit(1) from None
    finally:
        audit_logger.close()


@app.command()
def doctor(
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to a JSON or YAML config file."),
    ] = None,
    merge_mode: Annotated[Optional[str], typer.Option("--merge-mode", help="Provider merge mode.")] = None,
    provider_only: Annotated[
        Optional[str], typer.Option("--provider-only", help="Comma-separated allowed providers.")
    ] = None,
    provider_order: Annotated[
        Optional[str], typer.Option("--provider-order", help="Comma-separated provider order.")
    ] = None,
    provider_ignore: Annotated[
        Optional[str], typer.Option("--provider-ignore", help="Comma-separated providers to skip.")
    ] = None,
    sort: Annotated[Optional[str], typer.Option("--sort", help="Sort providers by: price|throughput|latency.")] = None,
    auth_mode: Annotated[Optional[str], typer.Option("--auth-mode", help="passthrough|upstream-key.")] = None,
    upstream_key: Annotated[Optional[str], typer.Option("--upstream-key", help="OpenRouter API key.")] = None,
) -> None:
    """Validate config and check connectivity to OpenRouter."""
    from provider_shim.policy.loader import CliOverrides

    cfg = _load(
        CliOverrides(
            config_path=config,
            merge_mode=merge_mode,
            provider_only=provider_only,
            provider_order=provider_order,
            provider_ignore=provider_ignore,
            sort=sort,
            auth_mode=auth_mode,
            upstream_key=upstream_key,
        )
    )

    _console.print("[bold]=== Configuration ===[/bold]")
    safe = cfg.safe_dump()
    policy = safe.pop("policy")
    for key, value in safe.items():
        _console.print(f"  {key}: {value}", markup=False, highlight=False)
    _console.print("\n[bold]Provider policy:[/bold]")
    routing = {k: v for k, v in policy.items() if v is not None}
    _console.print(
        json.dumps(routing, indent=2) if routing else "  (none)",
        markup=False,
        highlight=False,
    )

    _console.print("\n[bold]=== Connectivity check ===[/bold]")
    api_key = cfg.upstream_api_key
    if not api_key:
        _console.print(
            "[#ffcc00]⚠ No OpenRouter API key configured "
            "(set OPENROUTER_API_KEY or --upstream-key)[/#ffcc00]",
            highlight=False,
        )
    else:
        ok, detail = asyncio.run(check_connectivity(cfg.upstream_base_url, api_key))
        if ok:
            _console.print(f"[#00ff88]✓ OpenRouter API connectivity: OK[/#00ff88] ({detail})", highlight=False)
        else:
            _console.print(f"[bold red]✗ {detail}[/bold red]", highlight=False)

    _console.print("\n[bold]=== Summary ===[/bold]")
    _console.print("Configuration is valid. Run 'provider-shim serve' to start the server.")


async def check_connectivity(base_url: str, api_key: str) -> tuple[bool, str]:
    """GET the upstream model list with the given key.

    Returns:
        (ok, detail) where detail is a model count or an error description.
    """
    import aiohttp

    url = base_url.rstrip("/") + "/models"
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
            async with session.get(url, headers={"Authorization": f"Bearer {api_key}"}) as resp:
                if resp.status != 200:
                    return False, f"OpenRouter API returned {resp.status}: {resp.reason}"
                data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        return False, f"Failed to connect to OpenRouter: {e or type(e).__name__}"

    models = data.get("data") if isinstance(data, dict) else None
    count = len(models) if isinstance(models, list) else "unknown"
    return True, f"available models: {count}"


@app.command(name="print-env")
def print_env(
    host: Annotated[str, typer.Option("--host", help="Shim host.")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="Shim port.")] = 8787,
    model: Annotated[str, typer.Option("--model", help="Model to suggest for Claude Code.")] = _DEFAULT_MODEL_HINT,
) -> None:
    """Print environment variable setups for supported clients."""
    typer.echo(render_env(host, port, model))


def render_env(host: str, port: int, model: str = _DEFAULT_MODEL_HINT) -> str:
    base_url = f"http://{host}:{port}"
    sections = [
        (
            "Claude Code (Automatic - Recommended)",
            [
                "# Works if you have both ANTHROPIC_API_KEY and OPENROUTER_API_KEY set",
                f'export ANTHROPIC_BASE_URL="{base_url}"',
                f'export ANTHROPIC_MODEL="{model}"',
                "# The shim substitutes your Anthropic key with your OpenRouter key",
            ],
        ),
        (
            "Claude Code (Explicit Control)",
            [
                f'export ANTHROPIC_BASE_URL="{base_url}"',
                'export ANTHROPIC_AUTH_TOKEN="$OPENROUTER_API_KEY"',
                'export ANTHROPIC_API_KEY=""',
                f'export ANTHROPIC_MODEL="{model}"',
            ],
        ),
        (
            "OpenAI-compatible clients (OpenCode, OpenHands, Droid)",
            [
                f'export OPENAI_BASE_URL="{base_url}/v1"',
                'export OPENAI_API_KEY="$OPENROUTER_API_KEY"',
            ],
        ),
        (
            "Windows PowerShell (Automatic)",
            [
                f'$env:ANTHROPIC_BASE_URL="{base_url}"',
                f'$env:ANTHROPIC_MODEL="{model}"',
            ],
        ),
        (
            "Windows PowerShell (Explicit)",
            [
                f'$env:ANTHROPIC_BASE_URL="{base_url}"',
                "$env:ANTHROPIC_AUTH_TOKEN=$env:OPENROUTER_API_KEY",
                '$env:ANTHROPIC_API_KEY=""',
                f'$env:ANTHROPIC_MODEL="{model}"',
            ],
        ),
        (
            "Shim Configuration",
            [
                f'export SHIM_HOST="{host}"',
                f'export SHIM_PORT="{port}"',
            ],
        ),
    ]
    blocks = [f"=== {title} ===\n" + "\n".join(lines) for title, lines in sections]
    return "\n\n".join(blocks)
