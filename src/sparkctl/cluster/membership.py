"""
Cluster membership registry.

The registry is the single source of truth for which workers belong to the
cluster. Every change goes through the same ordered contract:

add:    trust the worker -> grant export access -> record membership
remove: revoke export access -> drop membership

Steps stop at the first failure and earlier steps are not rolled back. A
failed add can leave a trusted worker with an export rule but no
registry entry; re-running add converges it, since every step is
idempotent. The registry is always updated last, so it never lists a
worker that lacks access.
"""
import ipaddress
from pathlib import Path
from typing import List, Optional, Protocol

from .exports import AccessListSynchronizer, DesiredState
from .remote import RemoteCommandChannel
from ..utils.exceptions import StorageError, ValidationError
from ..utils.logging import get_logger

logger = get_logger(__name__)


def parse_worker_address(address: str) -> str:
    """
    Validate a worker address and return its canonical form.

    Raises:
        ValidationError: If address is not an IPv4 or IPv6 address
    """
    if not address or not address.strip():
        raise ValidationError("Missing worker address")

    try:
        return str(ipaddress.ip_address(address.strip()))
    except ValueError:
        raise ValidationError(f"Invalid worker address: {address!r}")


class MembershipStore(Protocol):
    """Persistence for the ordered member list."""

    def load(self) -> List[str]:
        ...

    def save(self, addresses: List[str]) -> None:
        ...


class InMemoryMembershipStore:
    """List-backed membership store."""

    def __init__(self, addresses: Optional[List[str]] = None):
        self.addresses: List[str] = list(addresses or [])

    def load(self) -> List[str]:
        return list(self.addresses)

    def save(self, addresses: List[str]) -> None:
        self.addresses = list(addresses)


class FileMembershipStore:
    """One worker address per line."""

    def __init__(self, path: Path = Path("/root/slaves")):
        self.path = Path(path)

    def load(self) -> List[str]:
        try:
            lines = self.path.read_text().splitlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(self.path, str(e)) from e
        return [line.strip() for line in lines if line.strip()]

    def save(self, addresses: List[str]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text("".join(f"{address}\n" for address in addresses))
            tmp_path.replace(self.path)
        except OSError as e:
            raise StorageError(self.path, str(e)) from e


class MembershipRegistry:
    """Ordered, duplicate-free set of worker addresses."""

    def __init__(
        self,
        store: MembershipStore,
        access_list: AccessListSynchronizer,
        channel: RemoteCommandChannel
    ):
        self.store = store
        self.access_list = access_list
        self.channel = channel
        self.logger = get_logger(__name__)

    def list(self) -> List[str]:
        """Snapshot of the current members in insertion order."""
        return self.store.load()

    def __contains__(self, address: str) -> bool:
        return parse_worker_address(address) in self.store.load()

    async def add(self, address: str) -> bool:
        """
        Join a worker to the cluster.

        Returns:
            True if the worker was newly recorded

        Raises:
            ValidationError: Bad address; nothing is changed
            Unreachable: Trust could not be established; nothing is changed
        """
        address = parse_worker_address(address)

        await self.channel.copy_identity(address)
        self.access_list.sync(address, DesiredState.PRESENT)

        members = self.store.load()
        if address in members:
            self.logger.info(f"{address} is already a member")
            return False

        members.append(address)
        self.store.save(members)
        self.logger.info(f"Added worker {address} ({len(members)} members)")
        return True

    def remove(self, address: str) -> bool:
        """
        Remove a worker from the cluster.

        Returns:
            True if the worker was a member
        """
        address = parse_worker_address(address)

        self.access_list.sync(address, DesiredState.ABSENT)

        members = self.store.load()
        if address not in members:
            self.logger.info(f"{address} was not a member")
            return False

        members = [member for member in members if member != address]
        self.store.save(members)
        self.logger.info(f"Removed worker {address} ({len(members)} members)")
        return True
