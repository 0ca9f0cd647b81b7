"""
Configuration module for Power Sequencer.

Settings are read from environment variables (optionally via a .env file).
List-valued settings are JSON-encoded, e.g.:

TAG_GROUPS='[{"key":"tier","value":"database"},{"key":"tier","value":"app"}]'
ILO_HOSTS='[{"esxi_host":"esx01","host":"ilo1_ip","username":"ilo1_user","password":"ilo1_pass"}]'
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError

load_dotenv()

logger = logging.getLogger("power-sequencer")

# vCenter configuration
VCENTER_HOST = os.environ.get("VCENTER_HOST", "")
VCENTER_USER = os.environ.get("VCENTER_USER", "")
VCENTER_PASSWORD = os.environ.get("VCENTER_PASSWORD", "")
VCENTER_PORT = int(os.environ.get("VCENTER_PORT", "443"))

# Logging
LOG_FILE = os.environ.get("LOG_FILE", "power-sequencer.log")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

VSAN_MIGRATION_MODES = ("noAction", "ensureObjectAccessibility", "evacuateAllData")


@dataclass(frozen=True)
class TagGroup:
    key: str
    value: str
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or f"{self.key}={self.value}"


@dataclass(frozen=True)
class IloHost:
    esxi_host: str
    host: str
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class Timeouts:
    """All waits in seconds."""

    vm_operation: float = 120
    vm_shutdown: float = 300
    vm_startup: float = 300
    force_stop: float = 60
    host_maintenance: float = 600
    connection: float = 30
    host_boot: float = 900
    poll_interval: float = 5
    startup_grace_delay: float = 60


@dataclass(frozen=True)
class Configuration:
    """Resolved configuration consumed by the orchestrator."""

    cluster_name: str
    priority_vms: Tuple[str, ...] = ()
    tag_groups: Tuple[TagGroup, ...] = ()
    startup_order: Optional[Tuple[str, ...]] = None
    shutdown_order: Optional[Tuple[str, ...]] = None
    infra_vm_prefix: str = "vCLS"
    migration_mode: str = "noAction"
    timeouts: Timeouts = field(default_factory=Timeouts)
    ilo_hosts: Tuple[IloHost, ...] = ()

    def ilo_for(self, esxi_host: str) -> Optional[IloHost]:
        for ilo in self.ilo_hosts:
            if ilo.esxi_host == esxi_host:
                return ilo
        return None


def _json_list(environ: Mapping[str, str], name: str) -> List[Any]:
    raw = environ.get(name, "").strip()
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{name} environment variable is not valid JSON: {e}")
    if not isinstance(value, list):
        raise ConfigurationError(f"{name} environment variable must be a JSON list")
    return value


def _name_list(environ: Mapping[str, str], name: str) -> Tuple[str, ...]:
    raw = environ.get(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _seconds(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number of seconds, got {raw!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative")
    return value


def _tag_groups(environ: Mapping[str, str]) -> Tuple[TagGroup, ...]:
    groups = []
    for entry in _json_list(environ, "TAG_GROUPS"):
        if not isinstance(entry, dict) or not all(k in entry for k in ("key", "value")):
            raise ConfigurationError(f"Tag group entry is missing required fields: {entry}")
        groups.append(TagGroup(key=entry["key"], value=entry["value"], name=entry.get("name")))
    return tuple(groups)


def _ilo_hosts(environ: Mapping[str, str]) -> Tuple[IloHost, ...]:
    hosts = []
    for entry in _json_list(environ, "ILO_HOSTS"):
        if not isinstance(entry, dict) or not all(
            k in entry for k in ("esxi_host", "host", "username", "password")
        ):
            # Never echo the entry, it holds credentials
            raise ConfigurationError("iLO host configuration is missing required fields")
        hosts.append(
            IloHost(
                esxi_host=entry["esxi_host"],
                host=entry["host"],
                username=entry["username"],
                password=entry["password"],
            )
        )
    return tuple(hosts)


def load_configuration(
    environ: Optional[Mapping[str, str]] = None, cluster_name: Optional[str] = None
) -> Configuration:
    """
    Build a Configuration from environment variables.

    Args:
        environ: Mapping to read from. Defaults to os.environ.
        cluster_name: Overrides CLUSTER_NAME when given.

    Returns:
        The resolved Configuration.

    Raises:
        ConfigurationError: If a value cannot be parsed.
    """
    if environ is None:
        environ = os.environ

    migration_mode = environ.get("VSAN_MIGRATION_MODE", "noAction")
    if migration_mode not in VSAN_MIGRATION_MODES:
        raise ConfigurationError(
            f"VSAN_MIGRATION_MODE must be one of {', '.join(VSAN_MIGRATION_MODES)}"
        )

    defaults = Timeouts()
    timeouts = Timeouts(
        vm_operation=_seconds(environ, "VM_OPERATION_TIMEOUT", defaults.vm_operation),
        vm_shutdown=_seconds(environ, "VM_SHUTDOWN_TIMEOUT", defaults.vm_shutdown),
        vm_startup=_seconds(environ, "VM_STARTUP_TIMEOUT", defaults.vm_startup),
        force_stop=_seconds(environ, "FORCE_STOP_TIMEOUT", defaults.force_stop),
        host_maintenance=_seconds(environ, "HOST_MAINTENANCE_TIMEOUT", defaults.host_maintenance),
        connection=_seconds(environ, "CONNECTION_TIMEOUT", defaults.connection),
        host_boot=_seconds(environ, "HOST_BOOT_TIMEOUT", defaults.host_boot),
        poll_interval=_seconds(environ, "POLL_INTERVAL", defaults.poll_interval),
        startup_grace_delay=_seconds(environ, "STARTUP_GRACE_DELAY", defaults.startup_grace_delay),
    )

    return Configuration(
        cluster_name=cluster_name or environ.get("CLUSTER_NAME", ""),
        priority_vms=_name_list(environ, "PRIORITY_VMS"),
        tag_groups=_tag_groups(environ),
        startup_order=_name_list(environ, "STARTUP_ORDER") or None,
        shutdown_order=_name_list(environ, "SHUTDOWN_ORDER") or None,
        infra_vm_prefix=environ.get("INFRA_VM_PREFIX", "vCLS"),
        migration_mode=migration_mode,
        timeouts=timeouts,
        ilo_hosts=_ilo_hosts(environ),
    )


# Validate required configuration
def validate_config(configuration: Optional[Configuration] = None) -> bool:
    """Validate that all required configuration parameters are set."""
    if not VCENTER_HOST:
        logger.error("VCENTER_HOST environment variable is not set")
        return False
    if not VCENTER_USER:
        logger.error("VCENTER_USER environment variable is not set")
        return False
    if not VCENTER_PASSWORD:
        logger.error("VCENTER_PASSWORD environment variable is not set")
        return False
    if configuration is not None:
        if not configuration.cluster_name:
            logger.error("CLUSTER_NAME environment variable is not set")
            return False
        if configuration.timeouts.poll_interval <= 0:
            logger.error("POLL_INTERVAL must be greater than zero")
            return False

    return True


def describe(configuration: Configuration) -> Dict[str, Any]:
    """Summarize a configuration for logging, without credentials."""
    return {
        "cluster": configuration.cluster_name,
        "priority_vms": list(configuration.priority_vms),
        "tag_groups": [group.label for group in configuration.tag_groups],
        "infra_vm_prefix": configuration.infra_vm_prefix,
        "migration_mode": configuration.migration_mode,
        "ilo_hosts": [ilo.esxi_host for ilo in configuration.ilo_hosts],
    }
