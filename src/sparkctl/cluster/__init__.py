"""
Cluster Management Module

Worker membership, NFS export access, SSH fan-out and daemon lifecycle.
"""
from .daemons import ClusterDaemonLifecycle, resolve_interface_address
from .exports import AccessListSynchronizer, AccessRule, DesiredState
from .membership import MembershipRegistry, parse_worker_address
from .remote import RemoteCommandChannel, RemoteResult

__all__ = [
    "ClusterDaemonLifecycle",
    "resolve_interface_address",
    "AccessListSynchronizer",
    "AccessRule",
    "DesiredState",
    "MembershipRegistry",
    "parse_worker_address",
    "RemoteCommandChannel",
    "RemoteResult"
]
