"""
Inventory snapshots for Power Sequencer.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import ClusterRef, HostInfo, VMInfo

logger = logging.getLogger("power-sequencer")


@dataclass
class InventorySnapshot:
    """Point-in-time read of a cluster's hosts and VMs."""

    cluster: ClusterRef
    hosts: List[HostInfo] = field(default_factory=list)
    vms: List[VMInfo] = field(default_factory=list)
    taken_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self._vms_by_name: Dict[str, VMInfo] = {vm.name: vm for vm in self.vms}
        self._hosts_by_name: Dict[str, HostInfo] = {host.name: host for host in self.hosts}

    def vm(self, name: str) -> Optional[VMInfo]:
        return self._vms_by_name.get(name)

    def host(self, name: str) -> Optional[HostInfo]:
        return self._hosts_by_name.get(name)

    def vms_on(self, host_name: str) -> List[VMInfo]:
        return [vm for vm in self.vms if vm.host_name == host_name]


def take_snapshot(client, cluster_ref: ClusterRef) -> InventorySnapshot:
    """
    Read the current hosts and VMs of a cluster.

    Raises:
        ClusterNotFound: If the cluster does not exist.
        TransportError: If the cluster client cannot be reached.
    """
    hosts = client.list_hosts(cluster_ref)
    vms = client.list_vms(cluster_ref)
    logger.debug(f"Snapshot of '{cluster_ref}': {len(hosts)} hosts, {len(vms)} VMs")
    return InventorySnapshot(cluster=cluster_ref, hosts=list(hosts), vms=list(vms))
