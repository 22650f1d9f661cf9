"""Shared Dataverse helpers for ppadmin-kit skills."""

import base64
import csv
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


def _ensure_venv() -> None:
    """Re-exec this script using the venv Python if not already running inside it.

    Skill scripts require packages installed in the venv (.venv/). Calling
    them with the system Python fails with ModuleNotFoundError. This guard
    detects that case and transparently re-execs via the venv interpreter.
    """
    plugin_root = Path(__file__).resolve().parents[2]
    venv_dir = plugin_root / ".venv"
    if sys.platform == "win32":
        venv_python = venv_dir / "Scripts" / "python.exe"
    else:
        venv_python = venv_dir / "bin" / "python3"

    # sys.prefix points to the active virtual environment root
    if not venv_python.exists() or Path(sys.prefix).resolve() == venv_dir.resolve():
        return

    os.execv(str(venv_python), [str(venv_python)] + sys.argv)


def add_auth_args(parser, allow_interactive: bool = True):
    """Add common authentication arguments to an argparse parser."""
    parser.add_argument(
        "--connection",
        help="Named connection from connections.json (default: workspace or global default)",
    )
    if allow_interactive:
        parser.add_argument(
            "--interactive",
            action="store_true",
            help="Use interactive authentication (tries Azure CLI, falls back to browser)",
        )
    parser.add_argument("--tenant-id", help="Azure AD tenant ID (for client secret auth)")
    parser.add_argument("--client-id", help="Azure AD app client ID (for client secret auth)")
    parser.add_argument("--client-secret", help="Azure AD app client secret (for client secret auth)")


def resolve_auth_args(args) -> Dict[str, Any]:
    """Merge CLI auth flags with the configured connection.

    Falls back to interactive auth when no complete client secret
    credential is available.
    """
    from _shared.preflight import resolve_connection

    conn = resolve_connection(
        {
            "tenant_id": args.tenant_id,
            "client_id": args.client_id,
            "client_secret": args.client_secret,
        },
        name=getattr(args, "connection", None),
    )
    complete = bool(conn.get("tenant_id") and conn.get("client_id") and conn.get("client_secret"))
    return {
        "tenant_id": conn.get("tenant_id"),
        "client_id": conn.get("client_id"),
        "client_secret": conn.get("client_secret"),
        "interactive": bool(getattr(args, "interactive", False) or not complete),
    }


def _get_identity_from_token(credential, resource_url: str) -> Optional[Dict[str, str]]:
    """Decode the JWT access token to extract caller/tenant info."""
    try:
        token = credential.get_token(f"{resource_url.rstrip('/')}/.default")
        payload = token.token.split(".")[1]
        payload += "=" * (4 - len(payload) % 4)
        claims = json.loads(base64.b64decode(payload))
        return {
            "username": claims.get("upn", claims.get("unique_name", claims.get("appid", "unknown"))),
            "tenant_id": claims.get("tid", "unknown"),
        }
    except Exception:
        return None


def create_credential(
    resource_url: str,
    tenant_id: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    interactive: bool = False,
):
    """
    Create an Azure credential for Power Platform access.

    Interactive auth tries Azure CLI first (silent if 'az login' was done),
    then falls back to browser prompt.
    """
    from azure.identity import (
        AzureCliCredential,
        ChainedTokenCredential,
        ClientSecretCredential,
        InteractiveBrowserCredential,
    )

    if interactive:
        tenant_kwargs = {"tenant_id": tenant_id} if tenant_id else {}
        credential = ChainedTokenCredential(
            AzureCliCredential(**tenant_kwargs),
            InteractiveBrowserCredential(**tenant_kwargs),
        )
    elif tenant_id and client_id and client_secret:
        credential = ClientSecretCredential(tenant_id, client_id, client_secret)
    else:
        raise ValueError(
            "Either use --interactive flag or provide --tenant-id, --client-id, and --client-secret"
        )

    # Show who we're connecting as
    identity = _get_identity_from_token(credential, resource_url)
    if identity:
        print(f"{identity['username']} → {resource_url}", file=sys.stderr)
    else:
        print(f"Connecting to {resource_url}...", file=sys.stderr)

    return credential


def create_client(environment_url: str, credential):
    """Create a DataverseClient for one environment, reusing an existing credential."""
    from PowerPlatform.Dataverse.client import DataverseClient

    return DataverseClient(environment_url, credential)


def odata_headers(token) -> Dict[str, str]:
    """Headers for raw Dataverse Web API calls."""
    return {
        **token.auth_header(),
        "Accept": "application/json",
        "OData-MaxVersion": "4.0",
        "OData-Version": "4.0",
    }


def is_odata_annotation(key: str) -> bool:
    """Check if a key is an OData annotation (metadata, not user data)."""
    return key.startswith("@") or "@OData" in key or "@Microsoft" in key


def strip_annotations(record: Dict[str, Any]) -> Dict[str, Any]:
    """Remove OData annotation keys from a record."""
    return {k: v for k, v in record.items() if not is_odata_annotation(k)}


def query_odata(
    client,
    table_name: str,
    select: Optional[List[str]] = None,
    filter_expr: Optional[str] = None,
    orderby: Optional[List[str]] = None,
    top: Optional[int] = None,
    include_annotations: bool = False,
) -> List[Dict[str, Any]]:
    """
    Query Dataverse using OData parameters.

    Args:
        client: DataverseClient instance
        table_name: Table logical name (e.g., "appmodule", "settingdefinition")
        select: List of column names to select
        filter_expr: OData filter expression (e.g., "statecode eq 0")
        orderby: List of order by expressions (e.g., ["name asc"])
        top: Maximum number of results to return
        include_annotations: If True, keep OData annotations (formatted values, etag, etc.)
    """
    kwargs: Dict[str, Any] = {}
    if select:
        kwargs["select"] = select
    if filter_expr:
        kwargs["filter"] = filter_expr
    if orderby:
        kwargs["orderby"] = orderby
    if top is not None:
        kwargs["top"] = top

    pages = client.get(table_name, **kwargs)

    all_records: List[Dict[str, Any]] = []
    for page in pages:
        if include_annotations:
            all_records.extend(page)
        else:
            all_records.extend(strip_annotations(r) for r in page)
    print(f"  Fetched {len(all_records)} {table_name} record(s)", file=sys.stderr)

    return all_records


def format_output(records, output_format: str = "json") -> str:
    """Format results for output.

    Accepts a list of dicts (tabular data) or a single dict/value (JSON only).
    """
    if output_format == "json":
        return json.dumps(records, indent=2, default=str)
    elif output_format == "table":
        # Wrap single dict in a list for table rendering
        if isinstance(records, dict):
            records = [records]
        if not records:
            return "No records found"

        columns = list(records[0].keys())

        widths = {col: len(str(col)) for col in columns}
        for record in records:
            for col in columns:
                widths[col] = max(widths[col], len(str(record.get(col, ""))))

        lines = []
        header = " | ".join(str(col).ljust(widths[col]) for col in columns)
        lines.append(header)
        lines.append("-+-".join("-" * widths[col] for col in columns))
        for record in records:
            row = " | ".join(str(record.get(col, "")).ljust(widths[col]) for col in columns)
            lines.append(row)

        return "\n".join(lines)
    else:
        return str(records)


def write_csv(path, records: Iterable[Dict[str, Any]], columns: List[str]) -> int:
    """Write records to a UTF-8 CSV file with a header row. Returns the row count."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        for record in records:
            writer.writerow(record)
            count += 1
    return count


def add_output_args(parser):
    """Add common output arguments to an argparse parser."""
    parser.add_argument(
        "--format",
        choices=["json", "table"],
        default="json",
        help="Output format (default: json)",
    )
