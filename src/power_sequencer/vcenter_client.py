"""
vCenter Client module for Power Sequencer.

This module provides the VCenterClient class, the cluster client used by the
orchestrator to read cluster inventory and issue power and maintenance-mode
operations against ESXi hosts and virtual machines.
"""

import http.client
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pyVim import connect
from pyVmomi import vim, vmodl

from .errors import (
    ClusterClientError,
    ClusterNotFound,
    NotFoundError,
    OperationFailed,
    TransportError,
)
from .models import (
    ClusterRef,
    ConnectionState,
    HostInfo,
    OperationKind,
    OperationState,
    PowerMode,
    PowerState,
    VMInfo,
)

logger = logging.getLogger("power-sequencer")

# Objects per PropertyCollector page
PAGE_SIZE = 1000

HOST_PROPERTIES = ["name", "runtime.connectionState", "runtime.inMaintenanceMode"]
VM_PROPERTIES = ["name", "runtime.powerState", "runtime.host", "customValue"]

_POWER_STATES = {
    "poweredOn": PowerState.ON,
    "poweredOff": PowerState.OFF,
    "suspended": PowerState.SUSPENDED,
}

_CONNECTION_STATES = {
    "connected": ConnectionState.CONNECTED,
    "disconnected": ConnectionState.DISCONNECTED,
    "notResponding": ConnectionState.NOT_RESPONDING,
}

_TASK_STATES = {
    "queued": OperationState.PENDING,
    "running": OperationState.PENDING,
    "success": OperationState.SUCCEEDED,
    "error": OperationState.FAILED,
}


class VCenterClient:
    """Client for interacting with vCenter."""

    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        port: int = 443,
        connection_timeout: float = 30,
    ):
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.connection_timeout = connection_timeout
        self.service_instance = None
        self._refs: Dict[type, Dict[str, Any]] = {vim.HostSystem: {}, vim.VirtualMachine: {}}

    def connect(self) -> None:
        """
        Connect to vCenter.

        Raises:
            TransportError: If vCenter cannot be reached or rejects the login.
        """
        try:
            logger.info(f"Connecting to vCenter at {self.host}")
            self.service_instance = connect.SmartConnect(
                host=self.host,
                user=self.user,
                pwd=self.password,
                port=self.port,
                disableSslCertValidation=True,
                httpConnectionTimeout=self.connection_timeout,
            )
        except vim.fault.InvalidLogin as e:
            raise TransportError(f"vCenter rejected the login for {self.user}: {e.msg}") from e
        except Exception as e:
            raise TransportError(f"Failed to connect to vCenter at {self.host}: {e}") from e

    def disconnect(self) -> None:
        """Disconnect from vCenter."""
        if self.service_instance:
            connect.Disconnect(self.service_instance)
            logger.info("Disconnected from vCenter")
            self.service_instance = None
            for known in self._refs.values():
                known.clear()

    @contextmanager
    def _translate_errors(self, target: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except ClusterClientError:
            raise
        except vim.fault.NotAuthenticated as e:
            raise TransportError("vCenter session is no longer authenticated", target) from e
        except (vmodl.fault.ManagedObjectNotFound, vim.fault.NotFound) as e:
            raise NotFoundError(f"Object no longer exists: {e.msg}", target) from e
        except vmodl.MethodFault as e:
            raise OperationFailed(e.msg or type(e).__name__, target) from e
        except (OSError, http.client.HTTPException) as e:
            raise TransportError(f"Lost connection to vCenter at {self.host}: {e}", target) from e

    def _content(self):
        if not self.service_instance:
            raise TransportError("Not connected to vCenter")
        return self.service_instance.RetrieveContent()

    @staticmethod
    def _filter_spec(view, properties: Dict[type, List[str]]) -> vim.PropertyCollector.FilterSpec:
        traversal = vim.PropertyCollector.TraversalSpec(
            name="viewTraversal", type=vim.view.ContainerView, path="view", skip=False
        )
        return vim.PropertyCollector.FilterSpec(
            objectSet=[vim.PropertyCollector.ObjectSpec(obj=view, selectSet=[traversal], skip=True)],
            propSet=[
                vim.PropertyCollector.PropertySpec(type=object_type, pathSet=paths, all=False)
                for object_type, paths in properties.items()
            ],
        )

    def _collect(
        self, container, properties: Dict[type, List[str]]
    ) -> List[Tuple[Any, Dict[str, Any]]]:
        """
        Read properties of every object of the given types below a container.

        All objects come back from a single PropertyCollector retrieval
        (paginated), instead of one round trip per property per object.

        Args:
            container: Folder or cluster to search.
            properties: Property paths to read, per managed object type.

        Returns:
            (object, {path: value}) pairs. Objects that vanished while being
            read are left out.
        """
        content = self._content()
        view = content.viewManager.CreateContainerView(container, list(properties), True)
        try:
            collector = content.propertyCollector
            result = collector.RetrievePropertiesEx(
                specSet=[self._filter_spec(view, properties)],
                options=vim.PropertyCollector.RetrieveOptions(maxObjects=PAGE_SIZE),
            )
            contents = []
            while result is not None:
                contents.extend(result.objects or [])
                if not result.token:
                    break
                result = collector.ContinueRetrievePropertiesEx(token=result.token)
        finally:
            view.Destroy()

        objects = []
        for object_content in contents:
            props = {prop.name: prop.val for prop in (object_content.propSet or [])}
            if object_content.missingSet or "name" not in props:
                logger.debug(f"Skipping {object_content.obj}, it could not be read")
                continue
            objects.append((object_content.obj, props))
        return objects

    def _cluster(self, cluster_ref: ClusterRef) -> vim.ClusterComputeResource:
        content = self._content()
        for obj, props in self._collect(content.rootFolder, {vim.ClusterComputeResource: ["name"]}):
            if props["name"] == cluster_ref.name:
                return obj
        raise ClusterNotFound(f"Cluster '{cluster_ref.name}' not found", target=cluster_ref.name)

    def _find(self, object_type: type, label: str, name: str, cluster_ref: Optional[ClusterRef]):
        known = self._refs[object_type]
        if name not in known:
            container = (
                self._cluster(cluster_ref) if cluster_ref is not None else self._content().rootFolder
            )
            for obj, props in self._collect(container, {object_type: ["name"]}):
                known[props["name"]] = obj
        if name not in known:
            raise NotFoundError(f"{label} '{name}' not found", target=name)
        return known[name]

    def _find_host(self, name: str, cluster_ref: Optional[ClusterRef]) -> vim.HostSystem:
        return self._find(vim.HostSystem, "Host", name, cluster_ref)

    def _find_vm(self, name: str, cluster_ref: Optional[ClusterRef]) -> vim.VirtualMachine:
        return self._find(vim.VirtualMachine, "VM", name, cluster_ref)

    def _custom_field_names(self) -> Dict[int, str]:
        manager = self._content().customFieldsManager
        if manager is None:
            return {}
        return {field.key: field.name for field in manager.field}

    def list_hosts(self, cluster_ref: ClusterRef) -> List[HostInfo]:
        """
        Get all ESXi hosts of a cluster.

        Returns:
            List of HostInfo snapshots.
        """
        with self._translate_errors(cluster_ref.name):
            objects = self._collect(self._cluster(cluster_ref), {vim.HostSystem: HOST_PROPERTIES})

        hosts = []
        for obj, props in objects:
            hosts.append(
                HostInfo(
                    name=props["name"],
                    connection_state=_CONNECTION_STATES.get(
                        str(props.get("runtime.connectionState")), ConnectionState.NOT_RESPONDING
                    ),
                    power_mode=(
                        PowerMode.MAINTENANCE
                        if props.get("runtime.inMaintenanceMode")
                        else PowerMode.NORMAL
                    ),
                )
            )
        self._refs[vim.HostSystem] = {props["name"]: obj for obj, props in objects}
        logger.debug(f"Found {len(hosts)} ESXi hosts in '{cluster_ref}'")
        return hosts

    def list_vms(self, cluster_ref: ClusterRef) -> List[VMInfo]:
        """
        Get all virtual machines of a cluster, with their custom attributes as tags.

        VMs deleted while the inventory is read are simply not listed.

        Returns:
            List of VMInfo snapshots.
        """
        with self._translate_errors(cluster_ref.name):
            field_names = self._custom_field_names()
            objects = self._collect(
                self._cluster(cluster_ref),
                {vim.VirtualMachine: VM_PROPERTIES, vim.HostSystem: ["name"]},
            )

        host_names = {
            obj._moId: props["name"] for obj, props in objects if isinstance(obj, vim.HostSystem)
        }
        vms = []
        refs = {}
        for obj, props in objects:
            if not isinstance(obj, vim.VirtualMachine):
                continue
            host = props.get("runtime.host")
            tags = {
                field_names[value.key]: value.value
                for value in (props.get("customValue") or [])
                if value.key in field_names
            }
            vms.append(
                VMInfo(
                    name=props["name"],
                    power_state=_POWER_STATES.get(
                        str(props.get("runtime.powerState")), PowerState.OFF
                    ),
                    host_name=host_names.get(host._moId) if host is not None else None,
                    tags=tags,
                )
            )
            refs[props["name"]] = obj
        self._refs[vim.VirtualMachine] = refs
        logger.debug(f"Found {len(vms)} virtual machines in '{cluster_ref}'")
        return vms

    def launch_operation(
        self,
        target_name: str,
        kind: OperationKind,
        cluster_ref: Optional[ClusterRef] = None,
        **options,
    ) -> Optional[vim.Task]:
        """
        Issue an operation without waiting for it.

        Returns:
            The vCenter task tracking the operation, or None when the call has
            no task (guest shutdown is accepted or rejected synchronously).
        """
        if kind is OperationKind.ENTER_MAINTENANCE:
            return self.set_host_maintenance(
                target_name,
                enter=True,
                migration_mode=options.get("migration_mode"),
                timeout=options.get("timeout", 0),
                cluster_ref=cluster_ref,
            )
        if kind is OperationKind.EXIT_MAINTENANCE:
            return self.set_host_maintenance(
                target_name, enter=False, timeout=options.get("timeout", 0), cluster_ref=cluster_ref
            )
        if kind is OperationKind.SHUTDOWN_HOST:
            return self.set_host_power(target_name, off=True, cluster_ref=cluster_ref)

        with self._translate_errors(target_name):
            vm = self._find_vm(target_name, cluster_ref)
            if kind is OperationKind.START_VM:
                logger.info(f"Powering on VM '{target_name}'")
                return vm.PowerOnVM_Task()
            if kind is OperationKind.SHUTDOWN_VM_GUEST:
                logger.info(f"Using VMware Tools to shut down VM '{target_name}'")
                vm.ShutdownGuest()
                return None
            if kind is OperationKind.FORCE_STOP_VM:
                logger.info(f"Forcing power off of VM '{target_name}'")
                return vm.PowerOffVM_Task()
        raise ValueError(f"Unsupported operation {kind.value}")

    def poll_operation(self, handle: Optional[vim.Task]) -> Tuple[OperationState, Optional[str]]:
        """
        Read the current state of a task.

        Returns:
            The operation state and, for failed tasks, the error message.
        """
        if handle is None:
            return OperationState.SUCCEEDED, None

        with self._translate_errors():
            info = handle.info
            state = _TASK_STATES.get(str(info.state), OperationState.PENDING)
            error = None
            if state is OperationState.FAILED:
                error = info.error.msg if info.error and info.error.msg else "task failed"
        return state, error

    def set_host_maintenance(
        self,
        host_name: str,
        enter: bool,
        migration_mode: Optional[str] = None,
        timeout: float = 0,
        cluster_ref: Optional[ClusterRef] = None,
    ) -> vim.Task:
        """
        Start moving a host into or out of maintenance mode.

        Args:
            host_name: ESXi host name.
            enter: True to enter maintenance mode, False to exit it.
            migration_mode: vSAN decommission object action used on entry.
            timeout: Seconds vCenter allows the transition, 0 for no limit.
        """
        with self._translate_errors(host_name):
            host = self._find_host(host_name, cluster_ref)
            if not enter:
                logger.info(f"Taking host '{host_name}' out of maintenance mode")
                return host.ExitMaintenanceMode_Task(timeout=int(timeout))

            logger.info(f"Putting host '{host_name}' into maintenance mode")
            spec = None
            if migration_mode:
                spec = vim.host.MaintenanceSpec(
                    vsanMode=vim.vsan.host.DecommissionMode(objectAction=migration_mode)
                )
            return host.EnterMaintenanceMode_Task(
                timeout=int(timeout), evacuatePoweredOffVms=False, maintenanceSpec=spec
            )

    def set_host_power(
        self, host_name: str, off: bool = True, cluster_ref: Optional[ClusterRef] = None
    ) -> vim.Task:
        """
        Start shutting down a host.

        vCenter can only power hosts off; powering on goes through iLO.
        """
        if not off:
            raise OperationFailed("vCenter cannot power on a host", target=host_name)

        with self._translate_errors(host_name):
            host = self._find_host(host_name, cluster_ref)
            if not host.runtime.inMaintenanceMode:
                raise OperationFailed(
                    f"Host '{host_name}' is not in maintenance mode, cannot shut down",
                    target=host_name,
                )
            logger.info(f"Shutting down host '{host_name}'")
            return host.ShutdownHost_Task(force=False)
