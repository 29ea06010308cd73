"""
Tests for role-tagged background process tracking.
"""
import threading
from unittest.mock import MagicMock, patch

import psutil
import pytest

from sparkctl.utils.exceptions import (
    AlreadyRunning,
    LaunchFailure,
    NotRunning,
    StorageError,
    TerminationFailure
)
from sparkctl.utils.process_manager import (
    FileHandleStore,
    InMemoryHandleStore,
    ProcessHandle,
    ProcessHandleStore,
    ProcessSupervisor
)


class TestProcessHandleStore:
    """start/stop idempotency gate."""

    def test_start_records_handle(self, processes, tmp_path):
        handle = processes.start("cpu-mem", lambda: 1234, output_dir=tmp_path)

        assert handle == ProcessHandle(role="cpu-mem", pid=1234, output_dir=tmp_path)
        assert processes.get("cpu-mem") == handle
        assert processes.is_running("cpu-mem")

    def test_second_start_fails_without_launching(self, processes):
        launches = []

        def launcher():
            launches.append(1)
            return 1000 + len(launches)

        processes.start("cpu-sampler", launcher)

        with pytest.raises(AlreadyRunning) as exc_info:
            processes.start("cpu-sampler", launcher)

        assert len(launches) == 1
        assert exc_info.value.role == "cpu-sampler"
        assert exc_info.value.pid == 1001

    def test_roles_are_independent(self, processes):
        processes.start("cpu-mem", lambda: 1)
        processes.start("disk", lambda: 2)

        assert processes.get("cpu-mem").pid == 1
        assert processes.get("disk").pid == 2

    def test_stop_kills_and_removes(self, processes, supervisor):
        processes.start("disk", lambda: 77)

        processes.stop("disk")

        assert supervisor.terminated == [77]
        assert processes.get("disk") is None

    def test_stop_when_not_running(self, processes, supervisor):
        with pytest.raises(NotRunning) as exc_info:
            processes.stop("disk")

        assert exc_info.value.role == "disk"
        assert supervisor.terminated == []

    def test_termination_failure_keeps_handle(self, processes, supervisor):
        processes.start("disk", lambda: 55)
        supervisor.fail_terminate.add(55)

        with pytest.raises(TerminationFailure) as exc_info:
            processes.stop("disk")

        assert exc_info.value.pid == 55
        assert processes.get("disk").pid == 55

        # Retry succeeds once the process can be killed
        supervisor.fail_terminate.clear()
        processes.stop("disk")
        assert processes.get("disk") is None

    def test_restart_after_stop(self, processes):
        processes.start("cpu-mem", lambda: 1)
        processes.stop("cpu-mem")

        handle = processes.start("cpu-mem", lambda: 2)

        assert handle.pid == 2

    def test_concurrent_starts_launch_once(self, supervisor):
        processes = ProcessHandleStore(InMemoryHandleStore(), supervisor)
        barrier = threading.Barrier(8)
        launches = []
        errors = []

        def launcher():
            launches.append(1)
            return 9000 + len(launches)

        def worker():
            barrier.wait()
            try:
                processes.start("cpu-mem", launcher)
            except AlreadyRunning as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(launches) == 1
        assert len(errors) == 7

    def test_lost_pid_file_race_kills_new_process(self, tmp_path, supervisor):
        store = FileHandleStore(tmp_path)
        processes = ProcessHandleStore(store, supervisor)

        def launcher():
            # Another sparkctl process claims the role meanwhile
            (tmp_path / ".disk_pid").write_text("31337\n")
            return 4242

        with pytest.raises(AlreadyRunning) as exc_info:
            processes.start("disk", launcher)

        assert exc_info.value.pid == 31337
        assert supervisor.terminated == [4242]


class TestFileHandleStore:
    """Pid file persistence."""

    def test_unusable_state_dir(self, tmp_path):
        state_dir = tmp_path / "state"
        state_dir.write_text("not a directory")
        store = FileHandleStore(state_dir)

        with pytest.raises(StorageError):
            store.put(ProcessHandle(role="disk", pid=77))

    def test_unwritable_pid_file_kills_launched_process(self, tmp_path):
        store = MagicMock()
        store.get.return_value = None
        store.put.side_effect = StorageError(tmp_path / ".disk_pid", "Read-only file system")
        supervisor = MagicMock()
        processes = ProcessHandleStore(store, supervisor)

        with pytest.raises(StorageError):
            processes.start("disk", lambda: 4321)

        supervisor.terminate.assert_called_once_with(4321)

    def test_round_trip(self, tmp_path):
        store = FileHandleStore(tmp_path)

        store.put(ProcessHandle("cpu-mem", 4321, tmp_path / "run"))

        assert (tmp_path / ".cpu-mem_pid").read_text().strip() == "4321"
        loaded = store.get("cpu-mem")
        assert loaded.pid == 4321
        assert loaded.output_dir is None

    def test_missing(self, tmp_path):
        assert FileHandleStore(tmp_path).get("disk") is None

    def test_put_existing_raises(self, tmp_path):
        store = FileHandleStore(tmp_path)
        store.put(ProcessHandle("disk", 1))

        with pytest.raises(AlreadyRunning):
            store.put(ProcessHandle("disk", 2))

        assert store.get("disk").pid == 1

    def test_delete(self, tmp_path):
        store = FileHandleStore(tmp_path)
        store.put(ProcessHandle("disk", 1))

        store.delete("disk")
        store.delete("disk")

        assert not (tmp_path / ".disk_pid").exists()

    def test_garbage_pid_file_still_tracked(self, tmp_path):
        (tmp_path / ".disk_pid").write_text("not-a-pid\n")

        handle = FileHandleStore(tmp_path).get("disk")

        assert handle is not None
        assert handle.pid == -1

    def test_garbage_pid_cannot_be_stopped(self, tmp_path):
        (tmp_path / ".disk_pid").write_text("oops\n")
        processes = ProcessHandleStore(FileHandleStore(tmp_path), ProcessSupervisor())

        with pytest.raises(TerminationFailure):
            processes.stop("disk")

        assert (tmp_path / ".disk_pid").exists()


class TestProcessSupervisor:
    """Launch and kill through subprocess/psutil."""

    def test_launch_detached(self):
        supervisor = ProcessSupervisor()

        with patch("subprocess.Popen") as mock_popen:
            mock_popen.return_value.pid = 2468
            pid = supervisor.launch(["sparkctl", "collect-df", "/tmp/df.csv", "5"])

        assert pid == 2468
        kwargs = mock_popen.call_args.kwargs
        assert kwargs["start_new_session"] is True
        assert kwargs["env"] is None

    def test_launch_with_env_merges_environment(self):
        supervisor = ProcessSupervisor()

        with patch("subprocess.Popen") as mock_popen:
            mock_popen.return_value.pid = 1
            supervisor.launch(["true"], env={"SPARK_LOCAL_IP": "10.0.0.1"})

        env = mock_popen.call_args.kwargs["env"]
        assert env["SPARK_LOCAL_IP"] == "10.0.0.1"
        assert "PATH" in env

    def test_launch_missing_executable(self):
        supervisor = ProcessSupervisor()

        with patch("subprocess.Popen", side_effect=FileNotFoundError(2, "No such file or directory")):
            with pytest.raises(LaunchFailure) as exc_info:
                supervisor.launch(["/opt/missing/sparkctl", "collect-stats", "/tmp/dstat.csv"])

        assert exc_info.value.command == "/opt/missing/sparkctl"

    def test_launch_failure_records_no_handle(self):
        processes = ProcessHandleStore(InMemoryHandleStore(), ProcessSupervisor())

        with patch("subprocess.Popen", side_effect=PermissionError(13, "Permission denied")):
            with pytest.raises(LaunchFailure):
                processes.start("disk", lambda: processes.supervisor.launch(["sparkctl"]))

        assert not processes.is_running("disk")

    def test_terminate_kills_and_waits(self):
        process = MagicMock()

        with patch("psutil.Process", return_value=process) as mock_process:
            ProcessSupervisor(wait_timeout=3).terminate(1234)

        mock_process.assert_called_once_with(1234)
        process.kill.assert_called_once()
        process.wait.assert_called_once_with(timeout=3)

    def test_terminate_missing_process_is_success(self):
        with patch("psutil.Process", side_effect=psutil.NoSuchProcess(1234)):
            ProcessSupervisor().terminate(1234)

    def test_terminate_access_denied(self):
        process = MagicMock()
        process.kill.side_effect = psutil.AccessDenied(1)

        with patch("psutil.Process", return_value=process):
            with pytest.raises(PermissionError):
                ProcessSupervisor().terminate(1)

    def test_terminate_timeout(self):
        process = MagicMock()
        process.wait.side_effect = psutil.TimeoutExpired(5, 1)

        with patch("psutil.Process", return_value=process):
            with pytest.raises(OSError):
                ProcessSupervisor().terminate(1)
