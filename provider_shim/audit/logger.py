"""Structured request logging for the shim.

Every event goes to stderr (via rich) for humans and, optionally, to a
JSON Lines file for machines.  Prompt content is never logged unless body
logging is switched on, and then it is redacted by default.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

from rich.console import Console

from provider_shim.audit.redact import redact_body
from provider_shim.policy.schema import LogLevel, ShimConfig

_console = Console(stderr=True)

_LEVEL_ORDER = {
    LogLevel.SILENT: 0,
    LogLevel.ERROR: 1,
    LogLevel.INFO: 2,
    LogLevel.DEBUG: 3,
}


class AuditLogger:
    """Logs proxy lifecycle events and one line per forwarded request.

    Attributes:
        level: Most verbose level that is emitted.
    """

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        log_path: Path | None = None,
    ) -> None:
        """Initialize the audit logger.

        Args:
            level: Events above this level are dropped (silent drops all).
            log_path: Optional path to a JSON Lines log.  If None, only logs
                      to stderr via rich console.
        """
        self.level = level
        self._log_file: IO[str] | None = None
        self._log_path = log_path
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = open(log_path, "a", encoding="utf-8")  # noqa: SIM115

    @classmethod
    def from_config(cls, config: ShimConfig) -> AuditLogger:
        log_path = Path(config.log_path) if config.log_path else None
        return cls(level=config.log_level, log_path=log_path)

    def close(self) -> None:
        """Flush and close the log file if open."""
        if self._log_file is not None:
            self._log_file.flush()
            self._log_file.close()
            self._log_file = None

    def enabled(self, level: LogLevel) -> bool:
        if level == LogLevel.SILENT:
            return False
        return _LEVEL_ORDER[level] <= _LEVEL_ORDER[self.level]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def log_startup(self, config: ShimConfig) -> None:
        """Log server startup with the settings that shape forwarding."""
        if not self.enabled(LogLevel.INFO):
            return
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "startup",
            "host": config.host,
            "port": config.port,
            "upstream": config.upstream.value,
            "merge_mode": config.merge_mode.value,
            "auth_mode": config.auth_mode.value,
            "enable_anthropic": config.enable_anthropic,
            "enable_chat": config.enable_chat,
            "enable_responses": config.enable_responses,
        })

        _console.print(
            f"[bold #00ff88]provider-shim v{config.version} listening on "
            f"http://{config.host}:{config.port}[/bold #00ff88]",
            highlight=False,
        )
        _console.print(f"  [dim]Forwarding to: {config.upstream_base_url}[/dim]", highlight=False)
        _console.print(
            f"  [dim]Merge mode: {config.merge_mode.value} · "
            f"auth: {config.auth_mode.value}[/dim]",
            highlight=False,
        )
        policy = config.policy.as_routing_object()
        if policy:
            _console.print(f"  [dim]Policy: {json.dumps(policy)}[/dim]", highlight=False)
        else:
            _console.print("  Policy: [#ffcc00]none[/#ffcc00] (requests forwarded as-is)")

    def log_request(
        self,
        method: str,
        path: str,
        status: int,
        elapsed_ms: int,
        model: str,
        attempts: int = 1,
    ) -> None:
        """Log a completed forwarded request (metadata only, never prompts)."""
        if not self.enabled(LogLevel.INFO):
            return
        entry: dict[str, Any] = {
            "timestamp": _now_iso(),
            "event": "request",
            "method": method,
            "path": path,
            "status": status,
            "ms": elapsed_ms,
            "model": model,
        }
        if attempts > 1:
            entry["attempts"] = attempts
        self._write_entry(entry)

        # Color status code: green for 2xx, yellow for 3xx, red for 4xx/5xx
        if 200 <= status < 300:
            status_style = "#00ff88"
        elif 300 <= status < 400:
            status_style = "#ffcc00"
        else:
            status_style = "red"
        _console.print(
            f"  [dim]{method:4s} {path} → [{status_style}]{status}[/{status_style}] "
            f"{model} {elapsed_ms}ms[/dim]",
            highlight=False,
        )

    def log_retry(self, path: str, attempt: int, status: int, delay_ms: int) -> None:
        """Log a rate-limited attempt that is about to be retried."""
        if not self.enabled(LogLevel.INFO):
            return
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "retry",
            "path": path,
            "attempt": attempt,
            "status": status,
            "delay_ms": delay_ms,
        })
        _console.print(
            f"  [#ffcc00]↻ {status}[/#ffcc00] {path} "
            f"[dim]retry {attempt + 1} in {delay_ms}ms[/dim]",
            highlight=False,
        )

    def log_policy_conflict(self, path: str, field: str, message: str) -> None:
        if not self.enabled(LogLevel.ERROR):
            return
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "policy_conflict",
            "path": path,
            "field": field,
        })
        _console.print(f"  [bold red]✗ CONFLICT[/bold red] {path}", highlight=False)
        _console.print(f"    [dim]{message}[/dim]", highlight=False)

    def log_upstream_error(self, path: str, upstream_url: str, kind: str, message: str) -> None:
        if not self.enabled(LogLevel.ERROR):
            return
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "upstream_error",
            "path": path,
            "upstream": upstream_url,
            "kind": kind,
            "error": message,
        })
        _console.print(
            f"  [bold red]Upstream {kind} error:[/bold red] {message}",
            highlight=False,
        )

    def log_error(self, path: str, elapsed_ms: int, message: str) -> None:
        """Log an unexpected failure while handling a request."""
        if not self.enabled(LogLevel.ERROR):
            return
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "error",
            "path": path,
            "ms": elapsed_ms,
            "error": message,
        })
        _console.print(f"  [bold red]Error:[/bold red] {path}: {message}", highlight=False)

    def log_request_body(self, path: str, body: Any, redact: bool = True) -> None:
        """Log an inbound body at debug level."""
        if not self.enabled(LogLevel.DEBUG):
            return
        logged = redact_body(body) if redact else body
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "request_body",
            "path": path,
            "body": logged,
        })
        _console.print(f"  [dim]body {path}: {json.dumps(logged, default=str)}[/dim]", highlight=False)

    def log_shutdown(self, reason: str) -> None:
        if not self.enabled(LogLevel.INFO):
            return
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "shutdown",
            "reason": reason,
        })
        _console.print(f"[bold]provider-shim stopped:[/bold] {reason}")

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Write a structured JSON entry to the log file.

        If the write fails (disk full, permission error, etc.), reports the
        failure to stderr once and drops the file handle; the proxy keeps
        serving.

        Args:
            entry: The log entry as a dictionary.
        """
        if self._log_file is not None:
            try:
                self._log_file.write(json.dumps(entry, default=str) + "\n")
                self._log_file.flush()
            except (OSError, ValueError) as e:
                # OSError: disk full, permission denied, etc.
                # ValueError: I/O operation on closed file
                _console.print(
                    f"[bold red]Audit log write failed:[/bold red] {e}",
                    highlight=False,
                )
                try:
                    self._log_file.close()
                except (OSError, ValueError):
                    pass
                self._log_file = None


def _now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()
