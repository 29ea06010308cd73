"""
Wires sparkctl components from configuration.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .cluster.daemons import ClusterDaemonLifecycle, resolve_interface_address
from .cluster.exports import AccessListSynchronizer, FileExportTable
from .cluster.membership import FileMembershipStore, MembershipRegistry
from .cluster.remote import RemoteCommandChannel
from .config.loader import Config
from .core.orchestrator import DistributedRunOrchestrator
from .telemetry.controller import TelemetryController
from .utils.exceptions import StorageError
from .utils.logging import get_logger
from .utils.process_manager import FileHandleStore, ProcessHandleStore, ProcessSupervisor

logger = get_logger(__name__)

DATA_SUBDIRS = ["historydata", "targetdata", "spark-events", "spark-csv"]


@dataclass
class SparkCtl:
    """All coordinator-side components, built from one Config."""
    config: Config
    processes: ProcessHandleStore
    telemetry: TelemetryController
    access_list: AccessListSynchronizer
    channel: RemoteCommandChannel
    registry: MembershipRegistry
    daemons: ClusterDaemonLifecycle
    orchestrator: DistributedRunOrchestrator

    def init_data_root(self) -> List[Path]:
        """Create the data root layout. Returns the directories ensured."""
        root = self.config.paths.data_root
        created = [root] + [root / name for name in DATA_SUBDIRS]
        for directory in created:
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(directory, str(e)) from e
        logger.info(f"Initialized data root {root}")
        return created


def build_app(config: Config) -> SparkCtl:
    """Build the production component graph."""
    paths = config.paths

    processes = ProcessHandleStore(FileHandleStore(paths.state_dir), ProcessSupervisor())

    telemetry = TelemetryController(
        processes,
        disk_interval=config.telemetry.disk_interval_seconds,
        disk_volume=config.telemetry.disk_volume,
        stats_interval=config.telemetry.stats_interval_seconds
    )

    access_list = AccessListSynchronizer(
        FileExportTable(paths.exports_file),
        shared_path=config.nfs.shared_path,
        prefix_length=config.nfs.prefix_length,
        options=config.nfs.options
    )

    channel = RemoteCommandChannel(
        user=config.remote.user,
        identity_file=config.remote.identity_file,
        timeout=config.remote.timeout_seconds,
        connect_timeout=config.remote.connect_timeout_seconds
    )

    registry = MembershipRegistry(FileMembershipStore(paths.slaves_file), access_list, channel)

    daemons = ClusterDaemonLifecycle(
        interface=config.cluster.interface,
        master_port=config.cluster.master_port,
        settle_seconds=config.cluster.settle_seconds
    )

    orchestrator = DistributedRunOrchestrator(
        telemetry,
        registry,
        channel,
        data_root=paths.data_root,
        app_jar=paths.app_jar,
        coordinator_address=lambda: resolve_interface_address(config.cluster.interface),
        master_port=config.cluster.master_port,
        cooldown_seconds=config.run.cooldown_seconds,
        remote_command=config.remote.command,
        local_profile=config.memory.local_run
    )

    return SparkCtl(
        config=config,
        processes=processes,
        telemetry=telemetry,
        access_list=access_list,
        channel=channel,
        registry=registry,
        daemons=daemons,
        orchestrator=orchestrator
    )
