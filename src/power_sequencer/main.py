"""
Main module for Power Sequencer.

This module contains the command line entry point: it loads configuration,
connects to vCenter, asks for confirmation and runs a cluster shutdown or
startup, mapping the resulting report to the process exit code.
"""

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from . import config
from .classifier import CategoryPlan, build_plan, classify
from .cluster_operations import LifecycleOrchestrator
from .errors import ClusterClientError, ClusterNotFound, ConfigurationError, TransportError
from .inventory import InventorySnapshot, take_snapshot
from .models import ClusterRef, ClusterReport, Direction, StatusEvent
from .vcenter_client import VCenterClient

logger = logging.getLogger("power-sequencer")

EXIT_FATAL = 2


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(config.LOG_FILE),
        ],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="power-sequencer",
        description="Ordered shutdown and startup of a vSphere cluster.",
    )
    parser.add_argument("--cluster", help="cluster name (overrides CLUSTER_NAME)")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="show hosts, VMs and their categories")
    for name, text in (("shutdown", "shut the cluster down"), ("startup", "start the cluster up")):
        command = subparsers.add_parser(name, help=text)
        command.add_argument("-y", "--yes", action="store_true", help="do not ask for confirmation")
        command.add_argument(
            "--dry-run", action="store_true", help="show the phase plan without changing anything"
        )
    return parser


def render_status(snapshot: InventorySnapshot, plan: CategoryPlan) -> None:
    logger.info(f"Cluster '{snapshot.cluster}'")
    for host in snapshot.hosts:
        logger.info(
            f"  host {host.name}: {host.connection_state.value}, {host.power_mode.value}"
        )
    for vm in sorted(snapshot.vms, key=lambda vm: vm.name):
        category = plan.category_for(vm)
        logger.info(f"  vm {vm.name}: {vm.power_state.value}, {category.name}, on {vm.host_name}")


def render_plan(snapshot: InventorySnapshot, plan: CategoryPlan, direction: Direction) -> None:
    if direction is Direction.SHUTDOWN:
        candidates = [vm for vm in snapshot.vms if vm.powered_on]
    else:
        candidates = [vm for vm in snapshot.vms if vm.powered_off]
    classification = classify(candidates, plan, direction)
    logger.info(f"Would {direction.value} cluster '{snapshot.cluster}' in this order:")
    for index, (category, members) in enumerate(classification.groups.items(), start=1):
        names = ", ".join(sorted(vm.name for vm in members)) or "-"
        logger.info(f"  {index}. {category}: {names}")
    if classification.excluded:
        logger.info(f"  excluded: {', '.join(sorted(vm.name for vm in classification.excluded))}")


def render_report(report: ClusterReport) -> None:
    logger.info(f"{report.direction.value.capitalize()} report for cluster '{report.cluster}'")
    for phase in report.phases:
        logger.info(
            f"  {phase.category}: {phase.succeeded}/{phase.attempted} succeeded, "
            f"{phase.forced_count} forced"
        )
    for outcome in report.host_outcomes:
        suffix = " (skipped)" if outcome.skipped else ""
        logger.info(f"  {outcome.action.value} {outcome.host_name}: {outcome.state.value}{suffix}")
    for phase, name, reason in report.failures():
        logger.error(f"  FAILED [{phase}] {name}: {reason}")
    for name in report.remaining:
        logger.error(f"  NOT CONVERGED {name}")
    if report.cancelled:
        logger.warning("  run was cancelled")


def log_event(event: StatusEvent) -> None:
    where = f"[{event.phase}] " if event.phase else ""
    target = f"{event.target}: " if event.target else ""
    logger.debug(f"event {event.kind} {where}{target}{event.message}")


def confirm(direction: Direction, cluster_ref: ClusterRef) -> bool:
    try:
        answer = input(
            f"Really {direction.value} cluster '{cluster_ref}'? Type the cluster name to proceed: "
        )
    except EOFError:
        logger.error("No terminal to confirm on, pass --yes to run unattended")
        return False
    return answer.strip() == cluster_ref.name


def main(argv: Optional[List[str]] = None) -> int:
    """Main function."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    logger.info("Starting Power Sequencer")

    try:
        configuration = config.load_configuration(cluster_name=args.cluster)
        plan = build_plan(configuration)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_FATAL

    if not config.validate_config(configuration):
        logger.error("Invalid configuration, exiting")
        return EXIT_FATAL
    logger.debug(f"Configuration: {config.describe(configuration)}")

    cluster_ref = ClusterRef(configuration.cluster_name)
    client = VCenterClient(
        host=config.VCENTER_HOST,
        user=config.VCENTER_USER,
        password=config.VCENTER_PASSWORD,
        port=config.VCENTER_PORT,
        connection_timeout=configuration.timeouts.connection,
    )
    cancel_event = threading.Event()

    def request_cancel(signum, frame):
        logger.warning("Interrupt received, finishing the current step before stopping")
        cancel_event.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    try:
        client.connect()

        if args.command == "status":
            render_status(take_snapshot(client, cluster_ref), plan)
            return 0

        direction = Direction(args.command)
        if args.dry_run:
            render_plan(take_snapshot(client, cluster_ref), plan, direction)
            return 0

        if not args.yes and not confirm(direction, cluster_ref):
            logger.info("Aborted by operator")
            return 1

        previous_handler = signal.signal(signal.SIGINT, request_cancel)
        try:
            orchestrator = LifecycleOrchestrator(
                client, cluster_ref, configuration, cancel_event=cancel_event, on_event=log_event
            )
            if direction is Direction.SHUTDOWN:
                report = orchestrator.shutdown_cluster()
            else:
                report = orchestrator.startup_cluster()
        finally:
            signal.signal(signal.SIGINT, previous_handler)

        render_report(report)
        return report.exit_code

    except (TransportError, ClusterNotFound) as e:
        logger.error(f"Aborting: {e}")
        return EXIT_FATAL

    except ClusterClientError as e:
        logger.error(f"Aborting on unexpected vCenter error: {e}")
        return EXIT_FATAL

    finally:
        client.disconnect()
        logger.info("Power Sequencer stopped")


if __name__ == "__main__":
    sys.exit(main())
