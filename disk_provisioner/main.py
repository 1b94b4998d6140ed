import argparse
import signal
import sys
import threading
from pathlib import Path

from disk_provisioner.__version__ import __version__
from disk_provisioner.config.settings import (
    SUPPORTED_FILESYSTEMS,
    ProvisioningSettings,
    get_setting,
    load_settings,
)
from disk_provisioner.domain.models import ProvisionMode
from disk_provisioner.logging import LoggerFactory, setup_logging
from disk_provisioner.provisioning.orchestrator import provision_host
from disk_provisioner.provisioning.report import (
    collect_mount_status,
    format_outcome_table,
    format_status_table,
)
from disk_provisioner.storage.exceptions import (
    EnumerationError,
    MountTableError,
    NoEligibleDevicesError,
    PrivilegeError,
)
from disk_provisioner.storage.fstab import MountTable
from disk_provisioner.storage.host import LinuxHost


EXIT_OK = 0
EXIT_DEVICE_FAILURE = 1
EXIT_ENVIRONMENT = 2

log = LoggerFactory.for_cli()


def _positive_int(value):
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def build_parser():
    parser = argparse.ArgumentParser(
        prog="disk-provisioner",
        description="Partition, format and persistently mount data disks",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw command output as well")
    parser.add_argument("--log-dir", help="Directory for log files")
    parser.add_argument("--settings", help="Path to a JSON settings file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    provision = subparsers.add_parser(
        "provision-disks",
        help="Wipe, partition, format and mount every eligible data disk (DESTRUCTIVE)",
    )
    provision.add_argument("--mount-prefix", help="Mount point prefix (default /mnt/minio)")
    provision.add_argument(
        "--filesystem", choices=SUPPORTED_FILESYSTEMS, help="Filesystem type (default xfs)"
    )
    provision.add_argument("--service-account", help="Owner of the data directories")
    provision.add_argument("--seed-label", help="Label of the hypervisor metadata volume")
    provision.add_argument(
        "--device-pattern", help="Only consider device names matching this regex"
    )
    provision.add_argument(
        "--force-reformat",
        action="store_true",
        help="Reformat every eligible disk, even ones that are already converged",
    )
    provision.add_argument(
        "--jobs", type=_positive_int, default=1, help="Disks to process in parallel"
    )
    provision.add_argument(
        "--device-timeout", type=float, help="Per-disk time budget in seconds"
    )
    provision.add_argument(
        "--allow-empty",
        action="store_true",
        help="Exit successfully when no eligible disk is found",
    )

    status = subparsers.add_parser("status", help="Show provisioned mount points")
    status.add_argument("--mount-prefix", help="Mount point prefix (default /mnt/minio)")
    return parser


def _settings_from_args(args) -> ProvisioningSettings:
    return ProvisioningSettings.from_store(
        mount_prefix=args.mount_prefix,
        filesystem=getattr(args, "filesystem", None),
        service_account=getattr(args, "service_account", None),
        seed_label=getattr(args, "seed_label", None),
        device_pattern=getattr(args, "device_pattern", None),
        device_timeout_seconds=getattr(args, "device_timeout", None),
    )


def _make_host(settings: ProvisioningSettings) -> LinuxHost:
    return LinuxHost(
        MountTable(settings.fstab_path),
        command_timeout=settings.command_timeout_seconds,
    )


def run_provision(args, settings: ProvisioningSettings) -> int:
    mode = ProvisionMode.FORCE_REFORMAT if args.force_reformat else ProvisionMode.SKIP_CONVERGED
    if mode is ProvisionMode.FORCE_REFORMAT:
        log.warning("--force-reformat: every eligible disk will be wiped and reformatted")

    cancel_event = threading.Event()

    def _request_cancel(signum, _frame):
        log.warning(f"Received signal {signum}; no further disks will be started")
        cancel_event.set()

    previous_handlers = {
        signum: signal.signal(signum, _request_cancel)
        for signum in (signal.SIGTERM, signal.SIGINT)
    }
    try:
        result = provision_host(
            _make_host(settings),
            settings,
            mode=mode,
            jobs=args.jobs,
            cancel_event=cancel_event,
        )
    except PrivilegeError as error:
        log.error(str(error))
        return EXIT_ENVIRONMENT
    except NoEligibleDevicesError as error:
        if args.allow_empty:
            log.warning(str(error))
            return EXIT_OK
        log.error(str(error))
        return EXIT_ENVIRONMENT
    except (EnumerationError, MountTableError) as error:
        log.error(str(error))
        return EXIT_ENVIRONMENT
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    print(format_outcome_table(result))
    if result.failures:
        return EXIT_DEVICE_FAILURE
    if not result.all_converged:
        # cancelled devices never reached convergence
        return EXIT_DEVICE_FAILURE
    return EXIT_OK


def run_status(settings: ProvisioningSettings) -> int:
    try:
        statuses = collect_mount_status(_make_host(settings), settings)
    except MountTableError as error:
        log.error(str(error))
        return EXIT_ENVIRONMENT
    if not statuses:
        log.warning(f"No mounts found under {settings.mount_prefix}")
        return EXIT_OK
    print(format_status_table(statuses))
    return EXIT_OK


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.settings:
        load_settings(Path(args.settings))

    log_dir = args.log_dir or get_setting("log_dir")
    try:
        setup_logging(
            debug=args.debug,
            trace=args.trace,
            log_dir=Path(log_dir) if log_dir else None,
        )
    except OSError as error:
        print(f"Cannot set up logging: {error}", file=sys.stderr)
        return EXIT_ENVIRONMENT

    try:
        settings = _settings_from_args(args)
    except (TypeError, ValueError) as error:
        log.error(f"Invalid settings: {error}")
        return EXIT_ENVIRONMENT

    if args.command == "status":
        return run_status(settings)
    return run_provision(args, settings)


if __name__ == "__main__":
    sys.exit(main())
