#!/usr/bin/env python3
"""
Shared logging system for the review loop components
Every control-path decision goes through here so loop.log is the single trace
"""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path


def _env_flag(name: str) -> bool:
    return os.getenv(name, '').lower() in ('1', 'true', 'yes')


def utc_timestamp() -> str:
    """Current UTC time in the ISO form used by state, flags and logs"""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class OrchestratorLogger:
    """Unified logging system for all review loop components"""

    def __init__(self, component_name: str, log_dir: Path = None, echo: bool = None):
        self.component_name = component_name
        self.log_dir = log_dir or Path.cwd()
        self.log_file = self.log_dir / f"{component_name}.log"
        self.echo = not _env_flag('REVIEW_LOOP_QUIET') if echo is None else echo
        self.debug_enabled = _env_flag('REVIEW_LOOP_DEBUG')

        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _write_log(self, message: str, level: str = "INFO"):
        """Append a timestamped line to the component log file"""
        log_entry = f"[{utc_timestamp()}] [{level}] {message}\n"

        try:
            with open(self.log_file, 'a', encoding='utf-8') as f:
                f.write(log_entry)
        except OSError as e:
            # Fallback to stderr if log file writing fails
            print(f"Log write failed: {e}", file=sys.stderr)

    def info(self, message: str):
        self._write_log(message, "INFO")
        if self.echo:
            print(f"[{self.component_name}] {message}")

    def error(self, message: str):
        self._write_log(message, "ERROR")
        if self.echo:
            print(f"[{self.component_name}] ERROR: {message}", file=sys.stderr)

    def warning(self, message: str):
        self._write_log(message, "WARNING")
        if self.echo:
            print(f"[{self.component_name}] WARNING: {message}")

    def debug(self, message: str):
        """Log debug message (only with REVIEW_LOOP_DEBUG set)"""
        if not self.debug_enabled:
            return
        self._write_log(message, "DEBUG")
        if self.echo:
            print(f"[{self.component_name}] DEBUG: {message}")

    def banner(self, title: str):
        """Mark the start of one invocation in the log"""
        self._write_log(f"=== {title} ===")
