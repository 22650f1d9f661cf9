#!/usr/bin/env python3
"""List Power Platform environments visible to the caller.

Reads the BAP admin API and prints id, display name, type, region and
Dataverse instance URL. Use the ids to fill the failure monitor's
environment list (scripts/bootstrap.py add-environment <id>).
"""

import argparse
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
    add_output_args,
    create_credential,
    format_output,
    resolve_auth_args,
)
from _shared.errors import AuthError, FetchError
from _shared.flow_helpers import list_environments

COLUMNS = ("id", "display_name", "type", "region", "instance_url")


def environment_rows(envs: List[Dict[str, Any]], dataverse_only: bool = False) -> List[Dict[str, Any]]:
    """Report rows ordered by display name, case-insensitive."""
    if dataverse_only:
        envs = [e for e in envs if e.get("instance_url")]
    return [
        {k: env.get(k) or "" for k in COLUMNS}
        for env in sorted(envs, key=lambda e: (e.get("display_name") or "").lower())
    ]


def main():
    parser = argparse.ArgumentParser(description="List Power Platform environments")
    add_auth_args(parser)
    parser.add_argument(
        "--dataverse-only",
        action="store_true",
        help="Only environments with a Dataverse database",
    )
    add_output_args(parser)
    args = parser.parse_args()

    try:
        auth = resolve_auth_args(args)
        credential = create_credential(BAP_API_RESOURCE, **auth)
        envs = list_environments(token_for(credential, BAP_API_RESOURCE))
    except (AuthError, FetchError) as e:
        print(f"Power Platform API Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    results = environment_rows(envs, args.dataverse_only)
    print(format_output(results, args.format))
    print(f"\n--- {len(results)} environment(s) ---", file=sys.stderr)


if __name__ == "__main__":
    main()
