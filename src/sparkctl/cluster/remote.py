"""
SSH command channel to worker nodes.
"""
import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..utils.exceptions import RemoteFailure, Unreachable
from ..utils.logging import get_logger

logger = get_logger(__name__)

# ssh reserves 255 for its own connection and authentication errors
SSH_ERROR_STATUS = 255


@dataclass
class RemoteResult:
    """Outcome of a command that ran on a worker."""
    exit_status: int
    output: str


class RemoteCommandChannel:
    """Runs commands on workers as a fixed user with a pre-deployed key."""

    def __init__(
        self,
        user: str = "root",
        identity_file: Path = Path("/root/.ssh/id_rsa"),
        timeout: float = 30,
        connect_timeout: int = 10
    ):
        """
        Initialize the channel.

        Args:
            user: Remote login user
            identity_file: Private key used for every worker
            timeout: Default seconds before a command counts as unreachable
            connect_timeout: ssh ConnectTimeout in seconds
        """
        self.user = user
        self.identity_file = Path(identity_file)
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.logger = get_logger(__name__)

    def _ssh_command(self, address: str, command: str) -> List[str]:
        return [
            "ssh",
            "-i", str(self.identity_file),
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            f"{self.user}@{address}",
            command,
        ]

    async def _run(self, address: str, cmd: List[str], timeout: Optional[float]) -> RemoteResult:
        timeout = self.timeout if timeout is None else timeout

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise Unreachable(address, f"cannot run {cmd[0]}: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise Unreachable(address, f"timed out after {timeout}s")

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        return RemoteResult(exit_status=process.returncode, output=output)

    async def execute(
        self,
        address: str,
        command: str,
        timeout: Optional[float] = None
    ) -> RemoteResult:
        """
        Run a shell command on a worker.

        Args:
            address: Worker address
            command: Command line, interpreted by the remote shell
            timeout: Override of the default timeout

        Returns:
            RemoteResult with exit status 0

        Raises:
            Unreachable: Connection, authentication or timeout failure
            RemoteFailure: The command ran and exited non-zero
        """
        self.logger.debug(f"[{address}] {command}")
        result = await self._run(address, self._ssh_command(address, command), timeout)

        if result.exit_status == SSH_ERROR_STATUS:
            raise Unreachable(address, result.output.strip())
        if result.exit_status != 0:
            raise RemoteFailure(address, result.exit_status, result.output)

        return result

    async def copy_identity(self, address: str) -> None:
        """
        Install our public key on a worker (ssh-copy-id).

        Runs attached to the terminal and unbounded, since ssh-copy-id may
        prompt the operator for the worker's password.

        Raises:
            Unreachable: If the key could not be installed
        """
        cmd = [
            "ssh-copy-id",
            "-i", str(self.identity_file),
            "-o", f"ConnectTimeout={self.connect_timeout}",
            f"{self.user}@{address}",
        ]
        try:
            process = await asyncio.create_subprocess_exec(*cmd)
        except (FileNotFoundError, PermissionError) as e:
            raise Unreachable(address, f"cannot run ssh-copy-id: {e}") from e

        exit_status = await process.wait()
        if exit_status != 0:
            raise Unreachable(address, f"ssh-copy-id failed with exit code {exit_status}")

        self.logger.info(f"Installed identity {self.identity_file} on {address}")
