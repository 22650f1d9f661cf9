#!/usr/bin/env python3
"""Grant an application user a security role in every environment.

Wraps `pac admin assign-user --application-user`, one environment at a time.
The environment list comes from --environment-id flags or, when none are
given, from the BAP admin API. pac must already be authenticated
(`pac auth create`) against the tenant.
"""

import argparse
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List

# Add skills/ to path for shared module imports
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))
from _shared.dataverse_helpers import _ensure_venv

if __name__ == "__main__":
    _ensure_venv()

from _shared.auth_helpers import BAP_API_RESOURCE, token_for
from _shared.dataverse_helpers import (
    add_auth_args,
    create_credential,
    format_output,
    resolve_auth_args,
    write_csv,
)
from _shared.errors import AuthError, CommandError, FetchError
from _shared.flow_helpers import list_environments
from _shared.preflight import check_pac, pac_executable, require

PAC_TIMEOUT = 300

RESULT_COLUMNS = ["environment_id", "environment_name", "status", "message"]


def pac_command(pac: str, environment_id: str, application_id: str, role: str) -> List[str]:
    return [
        pac, "admin", "assign-user",
        "--environment", environment_id,
        "--user", application_id,
        "--role", role,
        "--application-user",
    ]


def run_pac(command: List[str]) -> str:
    """Run a pac command and return its output. Raises CommandError on failure."""
    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=PAC_TIMEOUT)
    except FileNotFoundError as e:
        raise CommandError(command, detail="pac executable not found") from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(command, detail=f"timed out after {PAC_TIMEOUT}s") from e
    output = (result.stdout or "").strip()
    if result.returncode != 0:
        detail = (result.stderr or "").strip() or output
        raise CommandError(command, result.returncode, detail=detail)
    # pac reports some failures with exit code 0
    if "Error:" in output:
        raise CommandError(command, result.returncode, detail=output)
    return output


def assign_role(
    environments: List[Dict[str, Any]],
    application_id: str,
    role: str,
    pac: str = "pac",
    dry_run: bool = False,
) -> List[Dict[str, Any]]:
    """Assign ``role`` to the application user in each environment, sequentially."""
    results = []
    for env in environments:
        command = pac_command(pac, env["id"], application_id, role)
        entry = {
            "environment_id": env["id"],
            "environment_name": env.get("display_name", ""),
            "status": "",
            "message": "",
        }
        label = env.get("display_name") or env["id"]
        if dry_run:
            entry["status"] = "skipped"
            entry["message"] = " ".join(command)
            print(f"  [dry-run] {entry['message']}", file=sys.stderr)
        else:
            try:
                output = run_pac(command)
            except CommandError as e:
                entry["status"] = "failed"
                entry["message"] = str(e)
                print(f"  ✗ {label}: {e}", file=sys.stderr)
            else:
                entry["status"] = "assigned"
                entry["message"] = output.splitlines()[-1] if output else ""
                print(f"  ✓ {label}", file=sys.stderr)
        results.append(entry)
    return results


def resolve_environments(args) -> List[Dict[str, Any]]:
    if args.environment_id:
        return [{"id": env_id, "display_name": ""} for env_id in args.environment_id]

    auth = resolve_auth_args(args)
    credential = create_credential(BAP_API_RESOURCE, **auth)
    print("Listing environments...", file=sys.stderr)
    envs = list_environments(token_for(credential, BAP_API_RESOURCE))
    # pac can only assign users in environments with a Dataverse database
    return [e for e in envs if e.get("instance_url")]


def main():
    parser = argparse.ArgumentParser(
        description="Assign a security role to an application user across environments (via pac)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Every environment with Dataverse, discovered via the admin API
  %(prog)s --interactive --application-id 00000000-0000-0000-0000-000000000000 \\
    --role "System Administrator"

  # Specific environments, preview only
  %(prog)s --application-id <appid> --role "Basic User" \\
    --environment-id Default-<tenant-id> --environment-id <env-id> --dry-run
        """,
    )

    add_auth_args(parser)
    parser.add_argument("--application-id", required=True, help="Azure AD application (client) ID of the app user")
    parser.add_argument("--role", required=True, help='Security role name (e.g., "System Administrator")')
    parser.add_argument(
        "--environment-id",
        action="append",
        help="Environment ID (repeatable). Default: all environments from the admin API",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print pac commands without running them")
    parser.add_argument("--output", help="Optional CSV file for per-environment results")
    args = parser.parse_args()

    if not args.dry_run:
        require(check_pac())

    try:
        environments = resolve_environments(args)
        if not environments:
            print("No environments to process.", file=sys.stderr)
            sys.exit(1)

        print(f"Assigning '{args.role}' to {args.application_id} in {len(environments)} environment(s)...",
              file=sys.stderr)
        results = assign_role(
            environments,
            args.application_id,
            args.role,
            pac=pac_executable() or "pac",
            dry_run=args.dry_run,
        )

        if args.output:
            write_csv(args.output, results, RESULT_COLUMNS)
            print(f"Wrote results to {args.output}", file=sys.stderr)

        print(format_output(results, "table"))
        failed = [r for r in results if r["status"] == "failed"]
        print(f"\n--- {len(results)} environment(s), {len(failed)} failed ---", file=sys.stderr)

    except (AuthError, FetchError) as e:
        print(f"Power Platform API Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
