#!/usr/bin/env python3
"""Report the "Classic Look" opt-out setting for every model-driven app.

Enumerates environments through the BAP admin API, then for each
environment with a Dataverse instance reads the NewLookOptOut setting
definition, its organization-level value and the app-level overrides, and
writes one CSV row per model-driven app with the effective value and where
it came from (app, environment or default).
"""

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Add skills/ to path for shared module imports
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))
from _shared.dataverse_helpers import _ensure_venv

if __name__ == "__main__":
    _ensure_venv()

from _shared.auth_helpers import BAP_API_RESOURCE, token_for
from _shared.dataverse_helpers import (
    add_auth_args,
    create_client,
    create_credential,
    format_output,
    query_odata,
    resolve_auth_args,
    write_csv,
)
from _shared.errors import AuthError, FetchError
from _shared.flow_helpers import list_environments

from azure.core.exceptions import AzureError
from PowerPlatform.Dataverse.core.errors import HttpError, ValidationError

SETTING_NAME = "NewLookOptOut"

REPORT_COLUMNS = [
    "environment_name",
    "environment_url",
    "app_name",
    "app_unique_name",
    "app_id",
    "classic_look_opt_out",
    "source",
]

SUMMARY_COLUMNS = ["environment_name", "environment_url", "status", "apps", "opted_out", "error"]


def normalize_flag(value: Any) -> Optional[bool]:
    """Setting values come back as "true"/"false" strings (or booleans); None when unset."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    return None


def effective_opt_out(
    app_id: str,
    app_values: Dict[str, Optional[bool]],
    org_value: Optional[bool],
    default_value: Optional[bool],
) -> Tuple[bool, str]:
    """App override wins over the environment value, which wins over the definition default."""
    app_value = app_values.get(app_id)
    if app_value is not None:
        return app_value, "app"
    if org_value is not None:
        return org_value, "environment"
    return bool(default_value), "default"


def read_setting(client) -> Tuple[Optional[str], Optional[bool], Optional[bool], Dict[str, Optional[bool]]]:
    """Return (definition id, default, organization value, {app id: value}) for the setting."""
    definitions = query_odata(
        client, "settingdefinition",
        select=["settingdefinitionid", "uniquename", "defaultvalue"],
        filter_expr=f"uniquename eq '{SETTING_NAME}'",
        top=1,
    )
    if not definitions:
        return None, None, None, {}

    definition = definitions[0]
    definition_id = definition["settingdefinitionid"]
    default_value = normalize_flag(definition.get("defaultvalue"))

    org_rows = query_odata(
        client, "organizationsetting",
        select=["value", "_settingdefinitionid_value"],
        filter_expr=f"_settingdefinitionid_value eq {definition_id}",
        top=1,
    )
    org_value = normalize_flag(org_rows[0].get("value")) if org_rows else None

    app_rows = query_odata(
        client, "appsetting",
        select=["value", "_parentappmoduleid_value", "_settingdefinitionid_value"],
        filter_expr=f"_settingdefinitionid_value eq {definition_id}",
    )
    app_values = {
        row["_parentappmoduleid_value"]: normalize_flag(row.get("value"))
        for row in app_rows
        if row.get("_parentappmoduleid_value")
    }
    return definition_id, default_value, org_value, app_values


def report_environment(client, env: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Build report rows for all model-driven apps of one environment."""
    definition_id, default_value, org_value, app_values = read_setting(client)
    if definition_id is None:
        print(f"  Setting {SETTING_NAME} not defined in this environment; reporting defaults", file=sys.stderr)

    apps = query_odata(
        client, "appmodule",
        select=["appmoduleid", "name", "uniquename"],
        orderby=["name asc"],
    )

    rows = []
    for app in apps:
        app_id = app.get("appmoduleid", "")
        value, source = effective_opt_out(app_id, app_values, org_value, default_value)
        rows.append({
            "environment_name": env.get("display_name", ""),
            "environment_url": env.get("instance_url", ""),
            "app_name": app.get("name", ""),
            "app_unique_name": app.get("uniquename", ""),
            "app_id": app_id,
            "classic_look_opt_out": "true" if value else "false",
            "source": source,
        })
    return rows


def select_environments(envs: List[Dict[str, Any]], environment_url: Optional[str]) -> List[Dict[str, Any]]:
    """Keep environments that have a Dataverse instance, optionally only one URL."""
    selected = [e for e in envs if e.get("instance_url")]
    if environment_url:
        wanted = environment_url.rstrip("/").lower()
        selected = [e for e in selected if e["instance_url"].lower() == wanted]
    return selected


def main():
    parser = argparse.ArgumentParser(
        description="Report the Classic Look (NewLookOptOut) setting of every model-driven app",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # All environments the signed-in admin can see
  %(prog)s --interactive --output classic_look.csv

  # One environment, app registration auth
  %(prog)s --connection main --environment-url https://org.crm4.dynamics.com
        """,
    )

    add_auth_args(parser)
    parser.add_argument("--environment-url", help="Only report this environment")
    parser.add_argument(
        "--output",
        default="classic_look_report.csv",
        help="CSV file for per-app rows (default: classic_look_report.csv)",
    )
    parser.add_argument(
        "--summary-output",
        help="Optional CSV file for per-environment totals",
    )
    args = parser.parse_args()

    try:
        auth = resolve_auth_args(args)
        credential = create_credential(BAP_API_RESOURCE, **auth)
        bap_token = token_for(credential, BAP_API_RESOURCE)

        print("Listing environments...", file=sys.stderr)
        envs = select_environments(list_environments(bap_token), args.environment_url)
        if not envs:
            print("No environments with a Dataverse instance matched.", file=sys.stderr)
            sys.exit(1)

        rows: List[Dict[str, Any]] = []
        summaries: List[Dict[str, Any]] = []
        for env in envs:
            print(f"\n[{env['display_name']}] {env['instance_url']}", file=sys.stderr)
            summary = {
                "environment_name": env["display_name"],
                "environment_url": env["instance_url"],
                "status": "ok",
                "apps": 0,
                "opted_out": 0,
                "error": "",
            }
            try:
                client = create_client(env["instance_url"], credential)
                env_rows = report_environment(client, env)
            except (HttpError, ValidationError, AzureError) as e:
                print(f"  ✗ Dataverse Error: {e}", file=sys.stderr)
                if isinstance(e, HttpError):
                    if e.subcode:
                        print(f"    Subcode: {e.subcode}", file=sys.stderr)
                    if e.is_transient:
                        print("    This error may be transient. Consider re-running.", file=sys.stderr)
                summary["status"] = "failed"
                summary["error"] = str(e)
            else:
                rows.extend(env_rows)
                summary["apps"] = len(env_rows)
                summary["opted_out"] = sum(1 for r in env_rows if r["classic_look_opt_out"] == "true")
                print(f"  ✓ {summary['apps']} app(s), {summary['opted_out']} opted out", file=sys.stderr)
            summaries.append(summary)

        count = write_csv(args.output, rows, REPORT_COLUMNS)
        print(f"\nWrote {count} row(s) to {args.output}", file=sys.stderr)
        if args.summary_output:
            write_csv(args.summary_output, summaries, SUMMARY_COLUMNS)
            print(f"Wrote environment summary to {args.summary_output}", file=sys.stderr)

        print(format_output(summaries, "table"))
        failed = [s for s in summaries if s["status"] != "ok"]
        print(f"\n--- {len(summaries)} environment(s), {len(failed)} failed ---", file=sys.stderr)

    except (AuthError, FetchError) as e:
        print(f"Power Platform API Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
