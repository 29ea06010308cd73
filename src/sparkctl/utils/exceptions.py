"""
Custom exceptions for sparkctl.

Every failure the command surface can report has its own class so callers
can tell a retryable precondition apart from a worker-scoped telemetry
problem.
"""
from pathlib import Path
from typing import Optional


class SparkCtlError(Exception):
    """Base exception for all sparkctl errors."""
    pass


class ConfigError(SparkCtlError):
    """Configuration-related errors."""
    pass


class ValidationError(SparkCtlError):
    """Bad or missing arguments, or a directory that is not an engine install."""
    pass


class InsufficientMemory(SparkCtlError):
    """Host memory does not cover the configured reserves."""

    def __init__(self, total_mb: int, remaining_mb: int):
        self.total_mb = total_mb
        self.remaining_mb = remaining_mb
        super().__init__(
            f"Insufficient memory: {total_mb}MB total leaves {remaining_mb}MB after reserves"
        )


class ProcessError(SparkCtlError):
    """Base exception for tracked background process errors."""
    pass


class AlreadyRunning(ProcessError):
    """A process is already tracked for the role."""

    def __init__(self, role: str, pid: Optional[int] = None):
        self.role = role
        self.pid = pid
        message = f"'{role}' is already running"
        if pid is not None:
            message += f" (PID {pid})"
        super().__init__(message + ". Stop it first.")


class LaunchFailure(ProcessError):
    """A background process could not be started."""

    def __init__(self, command: str, reason: str = ""):
        self.command = command
        self.reason = reason
        message = f"Unable to start {command}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class NotRunning(ProcessError):
    """No process is tracked for the role."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"'{role}' does not look like it is running")


class TerminationFailure(ProcessError):
    """A tracked process could not be killed; its handle is kept."""

    def __init__(self, role: str, pid: int, reason: str = ""):
        self.role = role
        self.pid = pid
        self.reason = reason
        message = f"Unable to stop '{role}'. Kill PID {pid} manually"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class StorageError(SparkCtlError):
    """A local state or configuration file could not be read or written."""

    def __init__(self, path: Path, reason: str = ""):
        self.path = Path(path)
        self.reason = reason
        message = f"Cannot access {path}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class DirectoryExists(SparkCtlError):
    """Telemetry output directory already exists."""

    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(
            f"Report directory already exists: {path}. Provide a different directory."
        )


class RunInProgress(SparkCtlError):
    """Another orchestration holds the data root's run lock."""

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        super().__init__(f"Another run is in progress (lock held: {lock_path})")


class DaemonCommandError(SparkCtlError):
    """A Spark daemon control script exited non-zero."""

    def __init__(self, script: str, exit_status: int):
        self.script = script
        self.exit_status = exit_status
        super().__init__(f"{script} failed with exit code {exit_status}")


class RemoteError(SparkCtlError):
    """Base exception for worker-scoped remote command errors."""

    def __init__(self, address: str, message: str):
        self.address = address
        super().__init__(message)


class Unreachable(RemoteError):
    """Network or authentication failure talking to a worker."""

    def __init__(self, address: str, reason: str = ""):
        self.reason = reason
        message = f"Worker {address} is unreachable"
        if reason:
            message += f": {reason}"
        super().__init__(address, message)


class RemoteFailure(RemoteError):
    """The remote command ran and exited non-zero."""

    def __init__(self, address: str, exit_status: int, output: str = ""):
        self.exit_status = exit_status
        self.output = output
        message = f"Command on {address} failed with exit code {exit_status}"
        if output:
            message += f": {output.strip()}"
        super().__init__(address, message)
