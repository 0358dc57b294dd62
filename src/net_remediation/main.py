"""CLI entrypoint for the network remediation engine."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from net_remediation import __version__
from net_remediation.config import ACTION_FLAGS, get_settings
from net_remediation.engine import print_result, run_engine
from net_remediation.errors import ConfigurationError, EngineCancelled

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_ERROR = 3
EXIT_CANCELLED = 130


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="net-remediation",
        description="Validate pod-to-ClusterIP DNS reachability and remediate node dataplanes until it works.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--dns-ip", dest="dns_service_ip", default=None, help="ClusterIP of the cluster DNS service")
    parser.add_argument(
        "--node",
        dest="nodes",
        action="append",
        default=None,
        help="Node to remediate as NAME or NAME@ADDRESS (repeatable)",
    )
    parser.add_argument(
        "--all-nodes",
        dest="discover_nodes",
        action="store_true",
        default=None,
        help="Remediate every node reported by the cluster API",
    )
    parser.add_argument("--executor", choices=["local", "ssh", "agent"], default=None, help="Node command transport")
    parser.add_argument("--ssh-user", default=None, help="SSH username")
    parser.add_argument("--ssh-key", dest="ssh_key_path", type=Path, default=None, help="SSH private key")
    parser.add_argument("--kubeconfig", type=Path, default=None, help="Path to kubeconfig")
    parser.add_argument("--context", default=None, help="Kubernetes context to use")
    parser.add_argument("--max-attempts", type=int, default=None, help="Validation attempts before giving up")
    parser.add_argument(
        "--delay",
        dest="inter_attempt_delay",
        type=float,
        default=None,
        help="Seconds between attempts",
    )
    parser.add_argument("--run-timeout", type=float, default=None, help="Wall-clock ceiling for the run in seconds")
    parser.add_argument("--parallel-nodes", type=int, default=None, help="Nodes remediated concurrently")
    parser.add_argument(
        "--disable",
        action="append",
        choices=sorted(ACTION_FLAGS),
        default=[],
        help="Never apply this remediation (repeatable)",
    )
    parser.add_argument("--dry-run", action="store_true", default=None, help="Inspect and plan only")
    parser.add_argument("--diagnostics-dir", type=Path, default=None, help="Where the diagnostics archive is written")
    parser.add_argument("--report-json", type=Path, default=None, help="Also write the full result as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    keys = (
        "dns_service_ip",
        "nodes",
        "discover_nodes",
        "executor",
        "ssh_user",
        "ssh_key_path",
        "kubeconfig",
        "context",
        "max_attempts",
        "inter_attempt_delay",
        "run_timeout",
        "parallel_nodes",
        "dry_run",
        "diagnostics_dir",
    )
    out = {k: getattr(args, k) for k in keys if getattr(args, k) is not None}
    for kind in args.disable:
        out[ACTION_FLAGS[kind]] = False
    return out


def main(argv: list[str] | None = None) -> int:
    """Entrypoint for net-remediation CLI."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    if not args.verbose:
        for noisy in ("kubernetes", "urllib3", "paramiko"):
            logging.getLogger(noisy).setLevel(logging.WARNING)

    cancel = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: cancel.set())

    try:
        settings = get_settings(**_overrides(args))
        result = run_engine(settings, cancel_event=cancel)
    except (ConfigurationError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except (EngineCancelled, KeyboardInterrupt):
        print("Cancelled; probe pod and node sessions released.", file=sys.stderr)
        return EXIT_CANCELLED
    except Exception as e:
        logging.exception("Engine failed")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    print_result(result, Console())
    if args.report_json:
        args.report_json.parent.mkdir(parents=True, exist_ok=True)
        args.report_json.write_text(result.model_dump_json(indent=2), encoding="utf-8")
    if result.succeeded:
        return EXIT_SUCCESS
    print(f"Diagnostics archive: {result.archive_path}", file=sys.stderr)
    return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
