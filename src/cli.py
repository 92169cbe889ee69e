"""Console entry point for the Worker Fleet Provisioner CLI."""

from __future__ import annotations

import argparse
import logging
import threading
from concurrent.futures import wait
from typing import List

from config import ProvisionerConfig, load_fleets
from log_utils import setup_logging
from provisioner import FleetProvisioner

logger = logging.getLogger(__name__)


def _common_arguments() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--fleets",
        default="fleets.json",
        metavar="PATH",
        help="JSON file with fleet and template definitions (default: fleets.json)",
    )
    common.add_argument("--credentials", metavar="PATH", help="JSON credentials file")
    common.add_argument(
        "--state-file",
        metavar="PATH",
        help="File the pending-deployment queue is persisted to",
    )
    common.add_argument("--cleanup-period", type=int, default=900, metavar="SECONDS")
    common.add_argument("--verification-period", type=int, default=3600, metavar="SECONDS")
    common.add_argument("--pool-period", type=int, default=60, metavar="SECONDS")
    common.add_argument("--poll-interval", type=int, default=30, metavar="SECONDS")
    common.add_argument("--online-timeout", type=int, default=1800, metavar="SECONDS")
    common.add_argument(
        "--success-retention",
        type=int,
        default=60,
        metavar="MINUTES",
        help="Age after which succeeded deployments are deleted (default: 60)",
    )
    common.add_argument(
        "--failure-retention",
        type=int,
        default=480,
        metavar="MINUTES",
        help="Age after which failed deployments are deleted (default: 480)",
    )
    common.add_argument("--check-timeout", type=int, default=60, metavar="SECONDS")
    common.add_argument("--clean-timeout", type=int, default=900, metavar="SECONDS")
    common.add_argument("--max-parallel", type=int, default=16, metavar="N")
    common.add_argument("--log-file", default="fleet-provisioner.log", metavar="PATH")
    common.add_argument("--verbose", action="store_true")
    return common


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    common = _common_arguments()

    parser = argparse.ArgumentParser(
        description="Worker Fleet Provisioner: on-demand build workers on Compute Engine"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    provision = commands.add_parser(
        "provision", parents=[common], help="Verify, then provision workers for a workload"
    )
    provision.add_argument("label", help="Workload label, '' for any")
    provision.add_argument("workload", type=int, help="Number of jobs to cover")
    provision.add_argument("--fleet", help="Only provision from this fleet")

    commands.add_parser("verify", parents=[common], help="Run one verification pass")
    commands.add_parser("sweep", parents=[common], help="Run one cleanup sweep")
    commands.add_parser(
        "serve", parents=[common], help="Run the periodic passes until interrupted"
    )
    return parser


def _report_verification(provisioner: FleetProvisioner) -> bool:
    ok = True
    for fleet in provisioner.fleets():
        if fleet.configuration_valid:
            logger.info(
                f"Fleet {fleet.name}: valid, {fleet.approximate_worker_count}/{fleet.max_workers} worker(s)"
            )
        else:
            ok = False
            logger.warning(f"Fleet {fleet.name}: invalid: {fleet.status_details}")
        for template in fleet.templates:
            if template.verified:
                logger.info(f"  Template {template.name}: verified")
            else:
                ok = False
                logger.warning(f"  Template {template.name}: {template.status_details or 'pending'}")
    return ok


def _provision(provisioner: FleetProvisioner, args) -> int:
    provisioner.run_verification_pass()
    units = provisioner.provision(args.label or None, args.workload, fleet_name=args.fleet)
    if not units:
        logger.warning(f"Nothing provisioned for label {args.label!r}")
        return 1

    wait([unit.future for unit in units])
    failed = 0
    for unit in units:
        error = unit.future.exception()
        if error is not None:
            failed += 1
            logger.error(f"{unit.name}: failed: {error}")
        else:
            worker = unit.result()
            logger.info(f"{unit.name}: online at {worker.host or 'unknown address'}")
    logger.info(f"Provisioned {len(units) - failed}/{len(units)} worker(s)")
    return 1 if failed else 0


def _serve(provisioner: FleetProvisioner) -> int:
    provisioner.start()
    stop = threading.Event()
    try:
        stop.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping")
    finally:
        provisioner.stop()
    return 0


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose, log_file=args.log_file)

    config = ProvisionerConfig.from_args(args)
    provisioner = FleetProvisioner(config, fleets=load_fleets(config.fleets_file))

    if args.command == "serve":
        return _serve(provisioner)

    try:
        if args.command == "provision":
            return _provision(provisioner, args)
        if args.command == "verify":
            provisioner.run_verification_pass()
            return 0 if _report_verification(provisioner) else 1
        # sweep
        provisioner.registrar.load()
        provisioner.run_verification_pass()
        provisioner.run_cleanup_sweep()
        return 0
    finally:
        provisioner.stop()


def run() -> None:
    raise SystemExit(main())
