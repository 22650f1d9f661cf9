#!/usr/bin/env python3
"""Record failed Power Automate flow runs in a Dataverse table.

Polls the run history of every flow in the configured environments for runs
that started within the last N minutes, and inserts one failure record per
failed run id not already in the table. Meant to be run on a schedule with
a window that matches (or slightly exceeds) the schedule interval.

Partial failures (an unreachable environment, a flow whose runs could not be
listed, a rejected insert) are reported in the summary; the exit code is 0
whenever the run completes. Configuration or token errors exit with 1.
"""

import argparse
import sys
from pathlib import Path

# Add skills/ to path for shared module imports
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))
from _shared.dataverse_helpers import _ensure_venv

if __name__ == "__main__":
    _ensure_venv()

from _shared.dataverse_helpers import add_auth_args, add_output_args, format_output
from _shared.errors import AuthError, ConfigError
from _shared.monitor import ON_DEDUP_ERROR_CHOICES, MonitorConfig, print_summary, run_monitor
from _shared.preflight import resolve_connection, resolve_monitor_settings


def build_config(args) -> MonitorConfig:
    connection = resolve_connection(
        {
            "tenant_id": args.tenant_id,
            "client_id": args.client_id,
            "client_secret": args.client_secret,
        },
        name=args.connection,
    )
    settings = resolve_monitor_settings({
        "environments": args.environment,
        "store_url": args.store_url,
        "store_table": args.store_table,
        "column_prefix": args.column_prefix,
        "window_minutes": args.window_minutes,
        "flow_api_base": args.flow_api_base,
        "on_dedup_error": args.on_dedup_error,
    })
    return MonitorConfig.from_settings(connection, settings).validate()


def main():
    parser = argparse.ArgumentParser(
        description="Record failed flow runs from the last N minutes in a Dataverse table",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Use environments and store from config.json / ops/ppadmin.json
  %(prog)s

  # Everything on the command line
  %(prog)s --tenant-id <tid> --client-id <appid> --client-secret <secret> \\
    --environment Default-00000000-0000-0000-0000-000000000000 \\
    --environment 11111111-1111-1111-1111-111111111111 \\
    --store-url https://org.crm4.dynamics.com --store-table cr123_flowfailures \\
    --column-prefix cr123

  # Wider window, skip the insert when the duplicate check itself fails
  %(prog)s --window-minutes 30 --on-dedup-error skip
        """,
    )

    add_auth_args(parser, allow_interactive=False)

    parser.add_argument(
        "--environment",
        action="append",
        help="Environment ID to monitor (repeatable; overrides the configured list)",
    )
    parser.add_argument("--store-url", help="Dataverse URL holding the failure table")
    parser.add_argument("--store-table", help="Entity set name of the failure table (e.g., cr123_flowfailures)")
    parser.add_argument("--column-prefix", help="Publisher prefix of the failure table columns (e.g., cr123)")
    parser.add_argument(
        "--window-minutes",
        type=int,
        help="Look back this many minutes from now (default: 10)",
    )
    parser.add_argument("--flow-api-base", help="Flow API base URL (default: https://api.flow.microsoft.com)")
    parser.add_argument(
        "--on-dedup-error",
        choices=ON_DEDUP_ERROR_CHOICES,
        help="When the duplicate check fails: 'insert' anyway (default, may create a duplicate row) "
             "or 'skip' the record",
    )

    add_output_args(parser)

    args = parser.parse_args()

    try:
        config = build_config(args)
    except ConfigError as e:
        print("ERROR: failure monitor is not configured.\n", file=sys.stderr)
        for problem in e.problems:
            print(f"  ✗ {problem}", file=sys.stderr)
        print("\nRun scripts/bootstrap.py status for setup instructions.", file=sys.stderr)
        sys.exit(1)

    try:
        summary = run_monitor(config)
    except AuthError as e:
        print(f"Power Platform API Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print_summary(summary)
    if args.format == "table":
        print(format_output(summary.as_dict()["Environments"], args.format))
    else:
        print(format_output(summary.as_dict(), args.format))


if __name__ == "__main__":
    main()
