#!/usr/bin/env python3
"""Trigger an HTTP-triggered Power Automate flow with an OAuth bearer token.

For flows whose "When an HTTP request is received" trigger is restricted to
authenticated callers. The token is issued for the Flow service audience
(https://service.flow.microsoft.com/) using the app registration or the
interactive credential chain.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

# Add skills/ to path for shared module imports
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))
from _shared.dataverse_helpers import _ensure_venv

if __name__ == "__main__":
    _ensure_venv()

from _shared.auth_helpers import FLOW_API_RESOURCE, token_for
from _shared.dataverse_helpers import add_auth_args, create_credential, resolve_auth_args
from _shared.errors import AuthError, TriggerError
from _shared.flow_helpers import trigger_flow


def load_payload(payload: Optional[str], payload_file: Optional[str]) -> Any:
    """Parse the JSON body from --payload or --payload-file (empty object if neither)."""
    if payload and payload_file:
        raise ValueError("Use either --payload or --payload-file, not both")
    if payload_file:
        with open(payload_file, "r", encoding="utf-8") as f:
            return json.load(f)
    if payload:
        return json.loads(payload)
    return {}


def main():
    parser = argparse.ArgumentParser(
        description="Trigger an OAuth-protected HTTP-triggered flow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --connection main --trigger-url "https://<region>.environment.api.powerplatform.com/..." \\
    --payload '{"orderId": 42}'

  %(prog)s --interactive --trigger-url "<url>" --payload-file body.json
        """,
    )

    add_auth_args(parser)
    parser.add_argument("--trigger-url", required=True, help="HTTP POST URL copied from the flow trigger")
    parser.add_argument("--payload", help="JSON request body")
    parser.add_argument("--payload-file", help="Path to a JSON file used as request body")
    args = parser.parse_args()

    try:
        payload = load_payload(args.payload, args.payload_file)
        auth = resolve_auth_args(args)
        credential = create_credential(FLOW_API_RESOURCE, **auth)
        token = token_for(credential, FLOW_API_RESOURCE)

        print("Triggering flow...", file=sys.stderr)
        resp = trigger_flow(args.trigger_url, token, payload)
        print(f"  ✓ HTTP {resp.status_code}", file=sys.stderr)
        if resp.text:
            try:
                print(json.dumps(resp.json(), indent=2))
            except ValueError:
                print(resp.text)

    except json.JSONDecodeError as e:
        print(f"Error: payload is not valid JSON ({e})", file=sys.stderr)
        sys.exit(1)
    except (AuthError, TriggerError) as e:
        print(f"Power Platform API Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
