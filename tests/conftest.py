"""
Shared pytest fixtures and configuration for sparkctl tests.

This module provides common fixtures used across all test suites including:
- Fake process supervisor and SSH channel
- In-memory membership, handle and export stores
- A fake Spark installation on a temporary file system
"""
from pathlib import Path
from typing import List, Optional

import pytest

from sparkctl.cluster.exports import AccessListSynchronizer, InMemoryExportTable
from sparkctl.cluster.membership import InMemoryMembershipStore, MembershipRegistry
from sparkctl.cluster.remote import RemoteResult
from sparkctl.telemetry.controller import TelemetryController
from sparkctl.utils.exceptions import RemoteFailure, Unreachable
from sparkctl.utils.process_manager import InMemoryHandleStore, ProcessHandleStore


class FakeSupervisor:
    """Records launches and kills instead of touching real processes."""

    def __init__(self):
        self.launched: List[List[str]] = []
        self.terminated: List[int] = []
        self.fail_terminate = set()
        self._next_pid = 4000

    def launch(self, argv, env=None) -> int:
        self._next_pid += 1
        self.launched.append(list(argv))
        return self._next_pid

    def terminate(self, pid: int) -> None:
        if pid in self.fail_terminate:
            raise PermissionError(f"Operation not permitted: {pid}")
        self.terminated.append(pid)


class FakeChannel:
    """SSH channel double with configurable unreachable/failing workers."""

    def __init__(self, unreachable=(), failing=()):
        self.calls: List[tuple] = []
        self.identities: List[str] = []
        self.unreachable = set(unreachable)
        self.failing = set(failing)

    async def execute(self, address: str, command: str, timeout: Optional[float] = None) -> RemoteResult:
        self.calls.append((address, command))
        if address in self.unreachable:
            raise Unreachable(address, "Connection timed out")
        if address in self.failing:
            raise RemoteFailure(address, 1, "Error: Reporting is already started")
        return RemoteResult(exit_status=0, output="")

    async def copy_identity(self, address: str) -> None:
        if address in self.unreachable:
            raise Unreachable(address, "ssh-copy-id failed with exit code 1")
        self.identities.append(address)

    def commands_for(self, verb: str) -> List[tuple]:
        return [(address, command) for address, command in self.calls if f" {verb}" in command]


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def processes(supervisor) -> ProcessHandleStore:
    return ProcessHandleStore(InMemoryHandleStore(), supervisor)


@pytest.fixture
def telemetry(processes) -> TelemetryController:
    return TelemetryController(processes, collector_command=["sparkctl"])


@pytest.fixture
def export_table() -> InMemoryExportTable:
    return InMemoryExportTable(["/srv/other    10.0.0.9/24(ro,sync)"])


@pytest.fixture
def access_list(export_table) -> AccessListSynchronizer:
    return AccessListSynchronizer(export_table, shared_path="/root/spark/data")


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def membership_store() -> InMemoryMembershipStore:
    return InMemoryMembershipStore()


@pytest.fixture
def registry(membership_store, access_list, channel) -> MembershipRegistry:
    return MembershipRegistry(membership_store, access_list, channel)


@pytest.fixture
def spark_home(tmp_path) -> Path:
    """A directory laid out like a Spark distribution."""
    home = tmp_path / "spark-2.1.1-bin-hadoop2.7"
    for script in [
        "bin/spark-submit",
        "sbin/start-master.sh",
        "sbin/start-slave.sh",
        "sbin/stop-master.sh",
        "sbin/stop-slave.sh",
    ]:
        path = home / script
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\nexit 0\n")
        path.chmod(0o755)

    conf = home / "conf"
    conf.mkdir()
    (conf / "spark-env.sh.template").write_text("#!/usr/bin/env bash\n# Options read when launching programs locally\n")
    return home


@pytest.fixture
def app_jar(tmp_path) -> Path:
    jar = tmp_path / "lda-prototype.jar"
    jar.write_bytes(b"PK\x03\x04")
    return jar
