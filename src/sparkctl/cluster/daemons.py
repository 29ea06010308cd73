"""
Spark master/worker daemon lifecycle on the coordinator.

The master daemon uses SPARK_LOCAL_IP only for its web UI, and --host for
the REST and service ports, so both are set to the private address.
"""
import asyncio
import os
import socket
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

import psutil

from ..utils.exceptions import DaemonCommandError, ValidationError
from ..utils.logging import get_logger

logger = get_logger(__name__)

START_MASTER = Path("sbin") / "start-master.sh"
START_WORKER = Path("sbin") / "start-slave.sh"
STOP_MASTER = Path("sbin") / "stop-master.sh"
STOP_WORKER = Path("sbin") / "stop-slave.sh"


def resolve_interface_address(interface: str) -> str:
    """
    First IPv4 address bound to a network interface.

    Alias labels such as ``eth0:1`` are reported as separate interfaces.

    Raises:
        ValidationError: If the interface is missing or has no IPv4 address
    """
    addresses = psutil.net_if_addrs().get(interface)
    if not addresses:
        raise ValidationError(f"Network interface not found: {interface}")

    for addr in addresses:
        if addr.family == socket.AF_INET:
            return addr.address

    raise ValidationError(f"Network interface {interface} has no IPv4 address")


def master_url(address: str, port: int = 7077) -> str:
    return f"spark://{address}:{port}"


def require_scripts(engine_dir: Path, scripts: List[Path]) -> None:
    """
    Raises:
        ValidationError: If engine_dir lacks any of the scripts
    """
    for script in scripts:
        if not (Path(engine_dir) / script).is_file():
            raise ValidationError(f"{engine_dir} does not seem to be a Spark installation")


class ClusterDaemonLifecycle:
    """Starts and stops the coordinator's own master and worker daemons."""

    def __init__(
        self,
        interface: str = "eth0:1",
        master_port: int = 7077,
        settle_seconds: float = 10,
        address_resolver: Callable[[str], str] = resolve_interface_address,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.interface = interface
        self.master_port = master_port
        self.settle_seconds = settle_seconds
        self.address_resolver = address_resolver
        self.sleep = sleep
        self.logger = get_logger(__name__)

    async def _run_script(
        self,
        engine_dir: Path,
        script: Path,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None
    ) -> None:
        cmd = [str(Path(engine_dir) / script)] + (args or [])
        full_env = dict(os.environ)
        if env:
            full_env.update(env)

        self.logger.info(f"Running {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(*cmd, env=full_env)
        except OSError as e:
            raise ValidationError(f"Cannot run {cmd[0]}: {e}") from e

        exit_status = await process.wait()
        if exit_status != 0:
            raise DaemonCommandError(script.name, exit_status)

    async def start_cluster(self, engine_dir: Path) -> str:
        """
        Start the master bound to the private address, then a local worker.

        Returns:
            The master URL workers and jobs connect to

        Raises:
            ValidationError: Not a Spark install, or no address on the interface
            DaemonCommandError: A start script failed
        """
        require_scripts(engine_dir, [START_MASTER, START_WORKER])
        private_ip = self.address_resolver(self.interface)
        env = {"SPARK_LOCAL_IP": private_ip, "SPARK_PUBLIC_DNS": private_ip}
        url = master_url(private_ip, self.master_port)

        await self._run_script(engine_dir, START_MASTER, ["--host", private_ip], env)

        self.logger.debug(f"Waiting {self.settle_seconds}s for master to settle")
        await self.sleep(self.settle_seconds)

        await self._run_script(engine_dir, START_WORKER, ["--host", private_ip, url], env)

        self.logger.info(f"Cluster started: {url}")
        return url

    async def stop_cluster(self, engine_dir: Path) -> None:
        """
        Stop the worker daemon, then the master it points at.

        Raises:
            ValidationError: Not a Spark install
            DaemonCommandError: A stop script failed
        """
        require_scripts(engine_dir, [STOP_MASTER, STOP_WORKER])

        await self._run_script(engine_dir, STOP_WORKER)
        await self._run_script(engine_dir, STOP_MASTER)

        self.logger.info("Cluster stopped")
