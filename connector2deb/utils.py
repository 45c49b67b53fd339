#!/usr/bin/env python3
"""Utility helpers for connector2deb."""

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

LogCallback = Optional[Callable[[str], None]]
ANSI_ESCAPE_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~]|[\(\)][0-9A-Za-z])")
REDACTED = "******"


class Connector2DebError(Exception):
    """Base exception for all connector2deb errors."""


class ValidationError(Connector2DebError):
    """Raised when configuration or the connector descriptor is invalid."""


class DiscoveryError(Connector2DebError):
    """Raised when a template root cannot be read."""


class RenderError(Connector2DebError):
    """Raised when a template cannot be read or its destination written."""


class MissingArtifactError(Connector2DebError):
    """Raised when the prebuilt connector binaries are absent."""


class StagingError(Connector2DebError):
    """Raised when the staging tree cannot be created or populated."""


class CommandExecutionError(Connector2DebError):
    """Raised when a subprocess returns a non-zero exit status."""

    def __init__(
        self,
        message: str,
        cmd: Sequence[str] = (),
        returncode: Optional[int] = None,
        output: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = list(output)


class CommandTimeoutError(CommandExecutionError):
    """Raised when a subprocess exceeds its timeout and is killed."""


class PackageBuildError(CommandExecutionError):
    """Raised when dpkg fails to build the archive."""


def setup_logging(name: str = "connector2deb", level: int = logging.INFO) -> logging.Logger:
    """Create and configure a logger with consistent formatting."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    logger.addHandler(stream_handler)
    return logger


def create_temp_dir(prefix: str = "connector2deb-", parent: Optional[Path] = None) -> Path:
    """Create a private temporary directory, under /tmp unless a parent is given."""
    directory = str(parent) if parent is not None else "/tmp"
    return Path(tempfile.mkdtemp(prefix=prefix, dir=directory))


def cleanup_dir(path: Path, logger: Optional[logging.Logger] = None) -> None:
    """Best-effort directory cleanup."""
    try:
        shutil.rmtree(path, ignore_errors=False)
    except FileNotFoundError:
        return
    except Exception as exc:  # pragma: no cover - best effort cleanup
        if logger:
            logger.warning("Failed to cleanup %s: %s", path, exc)


def remove_file(path: Path, logger: Optional[logging.Logger] = None) -> None:
    """Best-effort single file removal."""
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:  # pragma: no cover - best effort cleanup
        if logger:
            logger.warning("Failed to remove %s: %s", path, exc)


def write_private_file(path: Path, content: str) -> Path:
    """Write ``content`` to a file only the current user can read."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
    return path


def command_exists(binary: str) -> bool:
    """Return True if a binary is available in PATH."""
    return shutil.which(binary) is not None


def strip_ansi_escapes(text: str) -> str:
    """Remove ANSI terminal escape codes from a log line."""
    return ANSI_ESCAPE_RE.sub("", text)


def redact(text: str, secrets: Iterable[Optional[str]]) -> str:
    """Mask every non-empty secret occurring in text."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


def run_command(
    cmd: list[str],
    logger: logging.Logger,
    cwd: Optional[Path] = None,
    env: Optional[dict[str, str]] = None,
    log_callback: LogCallback = None,
    check: bool = True,
    timeout: Optional[float] = None,
    secrets: Iterable[Optional[str]] = (),
) -> tuple[int, list[str]]:
    """Run a command and stream combined stdout/stderr line-by-line.

    Values listed in ``secrets`` never reach the logger, the callback or
    raised errors. When ``timeout`` elapses the whole process
    group is killed and ``CommandTimeoutError`` is raised regardless of
    ``check``.
    """
    secrets = [secret for secret in secrets if secret]
    shown_cmd = [redact(part, secrets) for part in cmd]
    display = " ".join(shown_cmd)
    logger.debug("Running command: %s", display)

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    try:
        process = subprocess.Popen(
            cmd,
            cwd=str(cwd) if cwd else None,
            env=process_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
            start_new_session=True,
        )
    except OSError as exc:
        raise CommandExecutionError(f"Unable to start command: {display}: {exc}", cmd=shown_cmd) from exc

    timed_out = threading.Event()

    def _kill() -> None:
        timed_out.set()
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:  # already exited
            pass

    timer = threading.Timer(timeout, _kill) if timeout else None
    if timer:
        timer.daemon = True
        timer.start()

    output_lines: list[str] = []
    assert process.stdout is not None

    try:
        for line in iter(process.stdout.readline, ""):
            raw = line.rstrip("\n")
            stripped = redact(strip_ansi_escapes(raw).strip(), secrets)
            output_lines.append(stripped)
            if stripped:
                logger.info(stripped)
                if log_callback:
                    log_callback(stripped)

        process.wait()
    finally:
        process.stdout.close()
        if timer:
            timer.cancel()

    if timed_out.is_set():
        raise CommandTimeoutError(
            f"Command timed out after {timeout}s: {display}",
            cmd=shown_cmd,
            returncode=process.returncode,
            output=output_lines,
        )

    if check and process.returncode != 0:
        joined = "\n".join(output_lines)
        raise CommandExecutionError(
            f"Command failed with exit code {process.returncode}: {display}\n{joined}",
            cmd=shown_cmd,
            returncode=process.returncode,
            output=output_lines,
        )

    return process.returncode, output_lines
