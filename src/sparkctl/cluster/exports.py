"""
NFS export table synchronization.

/etc/exports allows the same directory on several lines for different
clients. Keeping one client per line means a worker's rule can be found
and removed without parsing multi-client lines.
"""
import ipaddress
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Protocol

from ..utils.exceptions import SparkCtlError, StorageError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class DesiredState(str, Enum):
    """Whether a worker should have an export rule."""
    PRESENT = "present"
    ABSENT = "absent"


@dataclass(frozen=True)
class AccessRule:
    """One export line granting a worker access to the shared path."""
    path: str
    address: str
    prefix_length: int
    options: str

    def render(self) -> str:
        return f"{self.path}    {self.address}/{self.prefix_length}({self.options})"

    @classmethod
    def parse(cls, line: str) -> Optional["AccessRule"]:
        """Parse a single-client export line. Returns None for anything else."""
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return None

        parts = stripped.split()
        if len(parts) != 2:
            return None

        path, client = parts
        host, _, rest = client.partition("/")
        prefix, _, options = rest.partition("(")
        if not prefix.isdigit() or not options.endswith(")"):
            return None

        try:
            address = str(ipaddress.ip_address(host))
        except ValueError:
            return None

        return cls(path=path, address=address, prefix_length=int(prefix), options=options[:-1])


class ExportTable(Protocol):
    """Line-oriented export table with a reload hook."""

    def read_lines(self) -> List[str]:
        ...

    def write_lines(self, lines: List[str]) -> None:
        ...

    def reload(self) -> None:
        ...


class InMemoryExportTable:
    """List-backed export table that counts reloads."""

    def __init__(self, lines: Optional[List[str]] = None):
        self.lines: List[str] = list(lines or [])
        self.reload_count = 0

    def read_lines(self) -> List[str]:
        return list(self.lines)

    def write_lines(self, lines: List[str]) -> None:
        self.lines = list(lines)

    def reload(self) -> None:
        self.reload_count += 1


class FileExportTable:
    """The kernel NFS server's export table, reloaded with exportfs."""

    def __init__(self, path: Path = Path("/etc/exports"), reload_command: Optional[List[str]] = None):
        self.path = Path(path)
        self.reload_command = reload_command or ["exportfs", "-ra"]

    def read_lines(self) -> List[str]:
        try:
            return self.path.read_text().splitlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(self.path, str(e)) from e

    def write_lines(self, lines: List[str]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp_path.write_text("".join(f"{line}\n" for line in lines))
            tmp_path.replace(self.path)
        except OSError as e:
            raise StorageError(self.path, str(e)) from e

    def reload(self) -> None:
        _run_system_command(self.reload_command)


def _run_system_command(cmd: List[str]) -> None:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise SparkCtlError(f"Cannot run {cmd[0]}: {e}") from e

    if result.returncode != 0:
        raise SparkCtlError(
            f"{' '.join(cmd)} failed with exit code {result.returncode}: {result.stderr.strip()}"
        )


class AccessListSynchronizer:
    """Keeps one export rule per cluster member for the shared data path."""

    def __init__(
        self,
        table: ExportTable,
        shared_path: str = "/root/spark/data",
        prefix_length: int = 17,
        options: str = "rw,sync,no_subtree_check,no_root_squash",
        service_name: str = "nfs-kernel-server.service"
    ):
        self.table = table
        self.shared_path = shared_path
        self.prefix_length = prefix_length
        self.options = options
        self.service_name = service_name
        self.logger = get_logger(__name__)

    def _matches(self, line: str, address: str) -> bool:
        rule = AccessRule.parse(line)
        return rule is not None and rule.path == self.shared_path and rule.address == address

    def _warn_unmanaged(self, lines: List[str]) -> None:
        for line in lines:
            parts = line.split()
            if parts and parts[0] == self.shared_path and AccessRule.parse(line) is None:
                self.logger.warning(
                    f"Export line for {self.shared_path} is not a single-client rule and "
                    f"will not be updated: {line.strip()!r}"
                )

    def rules(self) -> List[AccessRule]:
        """Current rules for the shared path, in table order."""
        rules = []
        for line in self.table.read_lines():
            rule = AccessRule.parse(line)
            if rule is not None and rule.path == self.shared_path:
                rules.append(rule)
        return rules

    def addresses(self) -> List[str]:
        return [rule.address for rule in self.rules()]

    def _apply(self, before: List[str], after: List[str]) -> None:
        """Write after and reload. If the reload fails, before is written back."""
        self.table.write_lines(after)
        try:
            self.table.reload()
        except SparkCtlError:
            self.logger.error("Export reload failed; restoring previous export table")
            self.table.write_lines(before)
            raise

    def sync(self, address: str, desired: DesiredState) -> bool:
        """
        Converge the table so address has exactly one rule (PRESENT) or none (ABSENT).

        The table is reloaded only when it changed, so a repeated call with
        the same desired state is a no-op.

        Returns:
            True if the table was modified
        """
        desired = DesiredState(desired)
        lines = self.table.read_lines()
        self._warn_unmanaged(lines)
        matching = [line for line in lines if self._matches(line, address)]

        if desired is DesiredState.PRESENT:
            if matching:
                self.logger.debug(f"Export rule for {address} already present")
                return False
            rule = AccessRule(self.shared_path, address, self.prefix_length, self.options)
            self._apply(lines, lines + [rule.render()])
            self.logger.info(f"Added export rule: {rule.render()}")
            return True

        if not matching:
            self.logger.debug(f"No export rule for {address}")
            return False
        kept = [line for line in lines if not self._matches(line, address)]
        self._apply(lines, kept)
        self.logger.info(f"Removed {len(matching)} export rule(s) for {address}")
        return True

    def enable_sharing(self) -> None:
        """Start the NFS server."""
        _run_system_command(["systemctl", "start", self.service_name])
        self.logger.info(f"Started {self.service_name}")

    def disable_sharing(self) -> None:
        """Stop the NFS server."""
        _run_system_command(["systemctl", "stop", self.service_name])
        self.logger.info(f"Stopped {self.service_name}")
