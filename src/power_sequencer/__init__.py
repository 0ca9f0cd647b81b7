"""
Power Sequencer: ordered shutdown and startup of a vSphere cluster

This package shuts a cluster's virtual machines down in configured category
order (forcing off the ones that do not stop gracefully), puts the ESXi hosts
into maintenance mode and powers them off; and brings the cluster back up,
hosts first, then VMs in startup order.
"""

from .cluster_operations import LifecycleOrchestrator, shutdown_cluster, startup_cluster
from .config import Configuration, load_configuration, validate_config
from .ilo_client import IloClient
from .errors import (
    ClusterNotFound,
    ConfigurationError,
    NotFoundError,
    OperationFailed,
    OperationTimeout,
    TransportError,
)
from .models import ClusterRef, ClusterReport, PhaseResult
from .vcenter_client import VCenterClient
