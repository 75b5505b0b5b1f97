"""
Process Execution

Runs external commands (``docker compose``) with a timeout and bounded
output capture. Failures to launch are reported through ExecutionResult
rather than raised, mirroring the exit codes a shell would give:
127 for a missing command, 126 for permission denied, 124 for a timeout.
"""

import logging
import os
import signal
import subprocess  # nosec B404 - fixed argument vectors only, never a shell
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .cancellation import CancellationToken, OperationCancelled

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT = 1024 * 1024
CANCEL_POLL_SECONDS = 0.5


@dataclass
class ExecutionResult:
    """Result of a command execution."""

    success: bool
    exit_code: int
    stdout: str
    stderr: str
    elapsed_ms: int
    timed_out: bool
    stdout_truncated: bool = False
    stderr_truncated: bool = False


def truncate_output(output: str, max_size: int, stream_name: str = "output") -> str:
    """
    Truncate output keeping its head and tail around a marker.

    Compose reports the failing step last, so the tail gets most of the
    room. Cuts fall on line boundaries whenever the kept portion contains
    a newline, so no half lines reach the error message.

    Args:
        output: The output string to truncate
        max_size: Maximum allowed size in characters
        stream_name: Name of the stream for the truncation message

    Returns:
        str: Output no longer than ``max_size``
    """
    if len(output) <= max_size:
        return output

    # Sized for the worst case, the real omitted count is never longer
    marker_size = len(f"\n[TRUNCATED: {stream_name} too long, {len(output)} characters omitted]\n")
    available_size = max_size - marker_size
    if available_size <= 0:
        return output[-max_size:]

    head = output[: available_size // 4]
    cut = head.rfind("\n")
    if cut != -1:
        head = head[: cut + 1]

    tail = output[len(output) - (available_size - len(head)) :]
    cut = tail.find("\n")
    if cut != -1 and cut < len(tail) - 1:
        tail = tail[cut + 1 :]

    omitted = len(output) - len(head) - len(tail)
    return f"{head}\n[TRUNCATED: {stream_name} too long, {omitted} characters omitted]\n{tail}"


def _failed(exit_code: int, message: str, start_time: float) -> ExecutionResult:
    return ExecutionResult(
        success=False,
        exit_code=exit_code,
        stdout="",
        stderr=message,
        elapsed_ms=int((time.monotonic() - start_time) * 1000),
        timed_out=False,
    )


def _kill_process_tree(process: subprocess.Popen) -> None:
    if os.name != "nt":
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGTERM)
            time.sleep(0.1)
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        process.terminate()
        time.sleep(0.1)
        process.kill()


def _drain(process: subprocess.Popen) -> Tuple[str, str]:
    try:
        return process.communicate(timeout=1)
    except subprocess.TimeoutExpired:
        return "", ""


def _communicate(
    process: subprocess.Popen,
    timeout_seconds: int,
    start_time: float,
    cancel: Optional[CancellationToken],
) -> Tuple[str, str]:
    """
    Wait for the process, checking ``cancel`` between short waits.

    Raises:
        subprocess.TimeoutExpired: When ``timeout_seconds`` elapses first
        OperationCancelled: When the token fires; the process tree is killed
    """
    if cancel is None:
        return process.communicate(timeout=timeout_seconds)

    deadline = start_time + timeout_seconds
    while True:
        if cancel.cancelled:
            logger.warning(f"Cancelling command (pid {process.pid}): {cancel.reason}")
            _kill_process_tree(process)
            _drain(process)
            raise OperationCancelled(cancel.reason)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise subprocess.TimeoutExpired(process.args, timeout_seconds)
        try:
            # Output is kept across TimeoutExpired, so waiting again loses nothing
            return process.communicate(timeout=min(remaining, CANCEL_POLL_SECONDS))
        except subprocess.TimeoutExpired:
            continue


def execute_with_timeout(
    command: List[str],
    timeout_seconds: int = 300,
    max_output_size: int = DEFAULT_MAX_OUTPUT,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    cancel: Optional[CancellationToken] = None,
) -> ExecutionResult:
    """
    Execute a command with timeout and output size limits.

    Args:
        command: Command and arguments to execute
        timeout_seconds: Maximum execution time in seconds
        max_output_size: Maximum size for stdout/stderr in characters
        cwd: Working directory for command execution
        env: Complete environment for the command
        cancel: Token checked while the command runs

    Returns:
        ExecutionResult with captured, possibly truncated, output

    Raises:
        ValueError: If command, timeout or output limit is invalid
        OperationCancelled: If ``cancel`` fires before the command exits
    """
    if not command:
        raise ValueError("Command cannot be empty")
    if timeout_seconds <= 0:
        raise ValueError("Timeout must be positive")
    if max_output_size <= 0:
        raise ValueError("Max output size must be positive")

    logger.debug(f"Executing command with timeout {timeout_seconds}s: {' '.join(command)}")
    start_time = time.monotonic()

    try:
        process = subprocess.Popen(  # nosec B603
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=cwd,
            env=env,
            start_new_session=(os.name != "nt"),
        )
    except FileNotFoundError:
        logger.error(f"Command not found: {command[0]}")
        return _failed(127, f"Command not found: {command[0]}", start_time)
    except PermissionError:
        logger.error(f"Permission denied executing command: {command[0]}")
        return _failed(126, f"Permission denied: {command[0]}", start_time)

    try:
        stdout, stderr = _communicate(process, timeout_seconds, start_time, cancel)
        timed_out = False
    except subprocess.TimeoutExpired:
        _kill_process_tree(process)
        stdout, stderr = _drain(process)
        timed_out = True

    elapsed_ms = int((time.monotonic() - start_time) * 1000)
    exit_code = 124 if timed_out else process.returncode

    stdout = stdout or ""
    stderr = stderr or ""
    stdout_truncated = len(stdout) > max_output_size
    stderr_truncated = len(stderr) > max_output_size
    if stdout_truncated:
        stdout = truncate_output(stdout, max_output_size, "stdout")
    if stderr_truncated:
        stderr = truncate_output(stderr, max_output_size, "stderr")

    logger.debug(f"Command completed: exit_code={exit_code}, elapsed={elapsed_ms}ms")

    return ExecutionResult(
        success=not timed_out and exit_code == 0,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        elapsed_ms=elapsed_ms,
        timed_out=timed_out,
        stdout_truncated=stdout_truncated,
        stderr_truncated=stderr_truncated,
    )
