"""
Local telemetry collection for one job run.

Two collectors run as detached processes writing into a run-scoped
directory: a CPU/memory sampler (dstat.csv) and a disk-space sampler
(df.csv). The directory must not exist beforehand, so samples from
different runs never end up in the same file.
"""
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from ..utils.exceptions import AlreadyRunning, DirectoryExists, ProcessError, StorageError
from ..utils.logging import get_logger
from ..utils.process_manager import ProcessHandleStore

logger = get_logger(__name__)

CPU_MEMORY_ROLE = "cpu-mem"
DISK_ROLE = "disk"
ROLES = (CPU_MEMORY_ROLE, DISK_ROLE)

STATS_FILE = "dstat.csv"
DF_FILE = "df.csv"


@dataclass
class TelemetryStopReport:
    """What happened to each collector role on stop."""
    stopped: List[str] = field(default_factory=list)
    errors: Dict[str, ProcessError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class TelemetryController:
    """Starts and stops the local collectors through the process handle store."""

    def __init__(
        self,
        processes: ProcessHandleStore,
        disk_interval: float = 5,
        disk_volume: Path = Path("/"),
        stats_interval: float = 1,
        collector_command: Optional[List[str]] = None
    ):
        """
        Args:
            processes: Handle store used for both collector roles
            disk_interval: Seconds between disk samples
            disk_volume: Volume whose free space is sampled
            stats_interval: Seconds per CPU/memory sample
            collector_command: argv prefix that runs the sparkctl CLI
        """
        self.processes = processes
        self.disk_interval = disk_interval
        self.disk_volume = Path(disk_volume)
        self.stats_interval = stats_interval
        self.collector_command = collector_command or [sys.executable, "-m", "sparkctl"]
        self.logger = get_logger(__name__)

    def _launch(self, args: List[str]) -> int:
        return self.processes.supervisor.launch(self.collector_command + args)

    def start(self, output_dir: Path) -> Path:
        """
        Create output_dir and start both collectors into it.

        Raises:
            DirectoryExists: output_dir already exists; nothing is touched
            AlreadyRunning: A collector role is already tracked; output_dir
                is not created
            LaunchFailure: A collector could not be started; the other
                collector is stopped and output_dir is removed
            StorageError: output_dir could not be created
        """
        output_dir = Path(output_dir)
        if output_dir.exists():
            raise DirectoryExists(output_dir)

        for role in ROLES:
            handle = self.processes.get(role)
            if handle is not None:
                raise AlreadyRunning(role, handle.pid)

        try:
            output_dir.mkdir(parents=True)
        except OSError as e:
            raise StorageError(output_dir, str(e)) from e

        stats_file = output_dir / STATS_FILE
        df_file = output_dir / DF_FILE

        started = []
        try:
            self.processes.start(
                CPU_MEMORY_ROLE,
                lambda: self._launch([
                    "collect-stats", str(stats_file),
                    "--interval", str(self.stats_interval),
                ]),
                output_dir=output_dir
            )
            started.append(CPU_MEMORY_ROLE)
            self.processes.start(
                DISK_ROLE,
                lambda: self._launch([
                    "collect-df", str(df_file), str(self.disk_interval),
                    "--volume", str(self.disk_volume),
                ]),
                output_dir=output_dir
            )
        except (ProcessError, StorageError):
            self._roll_back(started, output_dir)
            raise

        self.logger.info(f"Started CPU, RAM, disk space collection to {output_dir}")
        return output_dir

    def _roll_back(self, started: List[str], output_dir: Path) -> None:
        """Stop collectors started so far and remove the directory created for them."""
        for role in started:
            try:
                self.processes.stop(role)
            except ProcessError as e:
                self.logger.error(f"Rollback: {e}")

        shutil.rmtree(output_dir, ignore_errors=True)
        self.logger.warning(f"Telemetry start failed; removed {output_dir}")

    def stop(self) -> TelemetryStopReport:
        """
        Stop both collectors.

        A role that is not running, or that could not be killed, is logged
        and recorded in the report; the other role is still stopped.
        """
        report = TelemetryStopReport()

        for role in ROLES:
            try:
                self.processes.stop(role)
                report.stopped.append(role)
            except ProcessError as e:
                self.logger.warning(str(e))
                report.errors[role] = e

        return report
