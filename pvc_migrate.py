#!/usr/bin/env python3

import argparse
import signal
import sys
from threading import Event

from kubernetes import client, config

from pvc_errors import ConfigurationError, MigrationAbortedError, MigrationCancelledError, PVCMigrationError
from pvc_orchestrator import PVCMigrator
from pvc_types import DEFAULT_BWLIMIT, DEFAULT_IMAGE, DEFAULT_SSH_PORT, DaemonSetMode, MigrationOptions, MigrationRequest

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_ABORTED = 2
EXIT_CANCELLED = 130


# -----------------------------------------------------------------------------
# Parse CLI
# -----------------------------------------------------------------------------
class UsageParser(argparse.ArgumentParser):
    """Exits with status 1 and the usage line on any argument error."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"[!] {message}", file=sys.stderr)
        sys.exit(EXIT_USAGE)


def positive_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be > 0, got {number}")
    return number


def non_negative_float(value):
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: '{value}'")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {value}")
    return number


def parse_args(argv=None):
    parser = UsageParser(
        prog="pvc-migrate",
        description="Resize or reclass a PVC in place: copy it to '<name>-tmp', recreate it, copy it back.",
        epilog="""
Examples:
  pvc-migrate --old-pvc data0 --size 20 --storage-class fast --namespace default
  pvc-migrate --old-pvc data0 --size 20 --storage-class fast --namespace default --dry-run
  pvc-migrate --old-pvc data0 --size 50 --storage-class nvme -n prod --bwlimit 50000 --ssh-port 2222

The owning Deployment/StatefulSet is scaled to 0 for the whole migration and
restored afterwards. A DaemonSet is DELETED (default) or paused with
--daemonset-mode pause. Re-running the same command after a failure resumes
from the state file.
""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--old-pvc", required=True, help="Name of the PVC to migrate")
    parser.add_argument("--size", required=True, type=positive_int, help="New PVC size in GiB")
    parser.add_argument("--storage-class", required=True, help="New StorageClass")
    parser.add_argument("-n", "--namespace", required=True, help="Kubernetes namespace")
    parser.add_argument("--bwlimit", type=int, default=DEFAULT_BWLIMIT,
                        help=f"Bandwidth limit for rsync in KB/s (default: {DEFAULT_BWLIMIT})")
    parser.add_argument("--ssh-port", type=int, default=DEFAULT_SSH_PORT,
                        help=f"SSH server port of the source pod (default: {DEFAULT_SSH_PORT})")
    parser.add_argument("--image", default=DEFAULT_IMAGE, help=f"Transfer pod image (default: {DEFAULT_IMAGE})")
    parser.add_argument("--grace-period", type=non_negative_float, default=20,
                        help="Seconds to wait after a copy before clean-up (default: 20)")
    parser.add_argument("--poll-interval", type=non_negative_float, default=5,
                        help="Seconds between pod status checks (default: 5)")
    parser.add_argument("--source-timeout", type=non_negative_float, default=600,
                        help="Seconds to wait for the source pod to serve SSH (default: 600)")
    parser.add_argument("--copy-timeout", type=non_negative_float, default=86400,
                        help="Seconds to wait for a copy to finish (default: 86400)")
    parser.add_argument("--release-timeout", type=non_negative_float, default=300,
                        help="Seconds to wait for pods to stop using a PVC (default: 300)")
    parser.add_argument("--retries", type=int, default=3, help="Retries for transient API errors (default: 3)")
    parser.add_argument("--daemonset-mode", choices=[m.value for m in DaemonSetMode], default=DaemonSetMode.DELETE.value,
                        help="How to quiesce a DaemonSet: delete it (not recreated) or pause it via nodeSelector")
    parser.add_argument("--state-file", default="pvc_migrate_state.json",
                        help="Checkpoint file used to resume (default: pvc_migrate_state.json)")
    parser.add_argument("--manifest-dir", default="manifests",
                        help="Where dry-run pod manifests and deleted DaemonSets are written (default: manifests)")
    parser.add_argument("--dry-run", action="store_true", help="Preview actions without applying changes")
    parser.add_argument("--kubeconfig", default=None, help="Path to kubeconfig (default: $KUBECONFIG or ~/.kube/config)")
    parser.add_argument("--context", default=None, help="kubeconfig context to use")
    return parser, parser.parse_args(argv)


def build_request(args):
    return MigrationRequest(
        source_claim=args.old_pvc,
        namespace=args.namespace,
        size_gib=args.size,
        storage_class=args.storage_class,
        bandwidth_limit=args.bwlimit,
        ssh_port=args.ssh_port,
    )


def build_options(args):
    return MigrationOptions(
        image=args.image,
        grace_period=args.grace_period,
        poll_interval=args.poll_interval,
        source_timeout=args.source_timeout,
        copy_timeout=args.copy_timeout,
        release_timeout=args.release_timeout,
        retries=args.retries,
        daemonset_mode=DaemonSetMode(args.daemonset_mode),
        dry_run=args.dry_run,
        manifest_dir=args.manifest_dir,
        state_file=args.state_file,
    )


# -----------------------------------------------------------------------------
# Kubernetes clients
# -----------------------------------------------------------------------------
def load_clients(kubeconfig=None, context=None):
    config.load_kube_config(config_file=kubeconfig, context=context)
    return client.CoreV1Api(), client.AppsV1Api(), client.CoordinationV1Api()


# -----------------------------------------------------------------------------
# Main
# -----------------------------------------------------------------------------
def main(argv=None):
    parser, args = parse_args(argv)
    try:
        request = build_request(args)
        options = build_options(args)
    except ConfigurationError as e:
        parser.error(str(e))

    try:
        core_v1, apps_v1, coordination_v1 = load_clients(args.kubeconfig, args.context)
    except config.ConfigException as e:
        print(f"[!] Could not load Kubernetes configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    cancel = Event()

    def handle_interrupt(_signum, _frame):
        cancel.set()
        print("\n[!] Interrupted. Cleaning up after the current step...")

    signal.signal(signal.SIGINT, handle_interrupt)

    migrator = PVCMigrator(request, options, core_v1, apps_v1, coordination_v1, cancel=cancel)
    try:
        migrator.run()
    except MigrationAbortedError as e:
        print(f"[!] {e}", file=sys.stderr)
        if isinstance(e.cause, MigrationCancelledError):
            return EXIT_CANCELLED
        return EXIT_ABORTED
    except ConfigurationError as e:
        print(f"[!] {e}", file=sys.stderr)
        return EXIT_USAGE
    except PVCMigrationError as e:
        print(f"[!] {e}", file=sys.stderr)
        return EXIT_ABORTED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
