"""
Background process tracking for sparkctl.

Telemetry collectors outlive the command that started them, so the only
record that one is running is a handle persisted per role. Handle presence
is the idempotency gate: a role with a handle cannot be started again and a
role without one cannot be stopped.
"""
import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Protocol, Sequence

import psutil

from .exceptions import AlreadyRunning, LaunchFailure, NotRunning, StorageError, TerminationFailure
from .logging import logger


@dataclass
class ProcessHandle:
    """A running background process tracked under a role tag."""
    role: str
    pid: int
    output_dir: Optional[Path] = None


class HandleStore(Protocol):
    """Persistence for process handles, one per role."""

    def get(self, role: str) -> Optional[ProcessHandle]:
        ...

    def put(self, handle: ProcessHandle) -> None:
        """Store a handle. Raises AlreadyRunning if the role already has one."""
        ...

    def delete(self, role: str) -> None:
        ...


class InMemoryHandleStore:
    """Dict-backed handle store."""

    def __init__(self):
        self._handles: Dict[str, ProcessHandle] = {}

    def get(self, role: str) -> Optional[ProcessHandle]:
        return self._handles.get(role)

    def put(self, handle: ProcessHandle) -> None:
        if handle.role in self._handles:
            raise AlreadyRunning(handle.role, self._handles[handle.role].pid)
        self._handles[handle.role] = handle

    def delete(self, role: str) -> None:
        self._handles.pop(role, None)


class FileHandleStore:
    """
    One pid file per role (``<state_dir>/.<role>_pid``) holding the bare PID.

    Pid files are created exclusively, so two processes racing to start the
    same role cannot both record a handle.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.logger = logger.getChild("handle_store")

    def _path(self, role: str) -> Path:
        return self.state_dir / f".{role}_pid"

    def get(self, role: str) -> Optional[ProcessHandle]:
        path = self._path(role)
        try:
            text = path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(path, str(e)) from e

        try:
            return ProcessHandle(role=role, pid=int(text))
        except ValueError:
            # Keep tracking the role; the operator has to clean up by hand
            self.logger.warning(f"Pid file {path} does not contain a PID: {text!r}")
            return ProcessHandle(role=role, pid=-1)

    def put(self, handle: ProcessHandle) -> None:
        path = self._path(handle.role)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(self.state_dir, str(e)) from e

        try:
            with open(path, "x") as f:
                f.write(f"{handle.pid}\n")
        except FileExistsError:
            existing = self.get(handle.role)
            raise AlreadyRunning(handle.role, existing.pid if existing else None)
        except OSError as e:
            raise StorageError(path, str(e)) from e

    def delete(self, role: str) -> None:
        path = self._path(role)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(path, str(e)) from e


class ProcessSupervisor:
    """Launches detached background processes and kills them by PID."""

    def __init__(self, wait_timeout: float = 5.0):
        self.wait_timeout = wait_timeout
        self.logger = logger.getChild("supervisor")

    def launch(
        self,
        argv: Sequence[str],
        env: Optional[Mapping[str, str]] = None
    ) -> int:
        """
        Start argv in its own session with output discarded.

        Returns:
            The new process PID

        Raises:
            LaunchFailure: If the executable could not be started
        """
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        try:
            process = subprocess.Popen(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                env=full_env,
                start_new_session=True
            )
        except OSError as e:
            raise LaunchFailure(argv[0] if argv else "<empty command>", str(e)) from e
        self.logger.debug(f"Launched PID {process.pid}: {' '.join(argv)}")
        return process.pid

    def terminate(self, pid: int) -> None:
        """
        Kill a process with SIGKILL and wait for it to go away.

        A PID that no longer exists counts as terminated.

        Raises:
            OSError: If the process could not be killed
        """
        if pid <= 0:
            raise OSError(f"Invalid PID {pid}")

        try:
            process = psutil.Process(pid)
            process.kill()
            process.wait(timeout=self.wait_timeout)
        except psutil.NoSuchProcess:
            self.logger.warning(f"PID {pid} was not running")
        except psutil.AccessDenied as e:
            raise PermissionError(f"Access denied killing PID {pid}") from e
        except psutil.TimeoutExpired as e:
            raise OSError(f"PID {pid} did not exit within {self.wait_timeout}s") from e


class ProcessHandleStore:
    """
    Idempotent start/stop of role-tagged background processes.

    Starts for the same role are serialized by a per-role lock, so the
    presence check and the launch happen as one step.
    """

    def __init__(self, store: HandleStore, supervisor: Optional[ProcessSupervisor] = None):
        self.store = store
        self.supervisor = supervisor or ProcessSupervisor()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.logger = logger.getChild("process_manager")

    def _lock_for(self, role: str) -> threading.Lock:
        with self._locks_guard:
            if role not in self._locks:
                self._locks[role] = threading.Lock()
            return self._locks[role]

    def get(self, role: str) -> Optional[ProcessHandle]:
        """Current handle for role, if any."""
        return self.store.get(role)

    def is_running(self, role: str) -> bool:
        return self.store.get(role) is not None

    def start(
        self,
        role: str,
        launcher: Callable[[], int],
        output_dir: Optional[Path] = None
    ) -> ProcessHandle:
        """
        Launch a process for role unless one is already tracked.

        Args:
            role: Role tag
            launcher: Callable that starts the process and returns its PID
            output_dir: Directory the process writes into

        Returns:
            The stored ProcessHandle

        Raises:
            AlreadyRunning: If role already has a handle (nothing is launched)
            LaunchFailure: If the launcher could not start the process
        """
        with self._lock_for(role):
            existing = self.store.get(role)
            if existing is not None:
                raise AlreadyRunning(role, existing.pid)

            pid = launcher()
            handle = ProcessHandle(role=role, pid=pid, output_dir=output_dir)
            try:
                self.store.put(handle)
            except (AlreadyRunning, StorageError):
                # Another process won the race for the pid file, or it is unwritable
                self.supervisor.terminate(pid)
                raise

            self.logger.info(f"Started {role} (PID {pid})")
            return handle

    def stop(self, role: str) -> None:
        """
        Kill the process tracked for role and drop its handle.

        Raises:
            NotRunning: If role has no handle
            TerminationFailure: If the kill failed; the handle is kept
        """
        with self._lock_for(role):
            handle = self.store.get(role)
            if handle is None:
                raise NotRunning(role)

            try:
                self.supervisor.terminate(handle.pid)
            except OSError as e:
                raise TerminationFailure(role, handle.pid, str(e)) from e

            self.store.delete(role)
            self.logger.info(f"Stopped {role} (PID {handle.pid})")
