"""Preflight checks and config management (stdlib only, runs before venv)."""

import json
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PLUGIN_ROOT = Path(__file__).resolve().parents[2]
CONFIG_PATH = PLUGIN_ROOT / "config.json"
CONNECTIONS_PATH = PLUGIN_ROOT / "connections.json"
VENV_DIR = PLUGIN_ROOT / ".venv"

_APP_REGISTRATION_URL = "https://portal.azure.com/#view/Microsoft_AAD_RegisteredApps/ApplicationsListBlade"

_ENV_VARS = {
    "tenant_id": "PP_TENANT_ID",
    "client_id": "PP_CLIENT_ID",
    "client_secret": "PP_CLIENT_SECRET",
}

MONITOR_DEFAULTS: Dict[str, Any] = {
    "environments": [],
    "store_url": "",
    "store_table": "",
    "column_prefix": "",
    "window_minutes": 10,
    "flow_api_base": "https://api.flow.microsoft.com",
    "on_dedup_error": "insert",
}


def _workspace_config_path() -> Path:
    """Return path to ops/ppadmin.json in the current working directory."""
    return Path.cwd() / "ops" / "ppadmin.json"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class Check:
    name: str
    passed: bool
    detail: str


@dataclass
class ComponentStatus:
    name: str
    ready: bool
    checks: List[Check] = field(default_factory=list)
    instructions: str = ""


# ---------------------------------------------------------------------------
# Config I/O
# ---------------------------------------------------------------------------


def load_config() -> Dict[str, Any]:
    if CONFIG_PATH.exists():
        with open(CONFIG_PATH, "r") as f:
            return json.load(f)
    return {"defaults": {}, "monitor": {}}


def save_config(data: Dict[str, Any]) -> None:
    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)


def load_connections() -> Dict[str, Any]:
    if CONNECTIONS_PATH.exists():
        with open(CONNECTIONS_PATH, "r") as f:
            return json.load(f)
    return {}


def save_connections(data: Dict[str, Any]) -> None:
    with open(CONNECTIONS_PATH, "w") as f:
        json.dump(data, f, indent=2)
    try:
        os.chmod(CONNECTIONS_PATH, 0o600)
    except OSError:
        pass


def load_workspace() -> Dict[str, Any]:
    path = _workspace_config_path()
    if path.exists():
        with open(path, "r") as f:
            return json.load(f)
    return {}


def save_workspace(data: Dict[str, Any]) -> None:
    path = _workspace_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def resolve_connection(cli_overrides: Optional[Dict[str, Any]] = None, name: Optional[str] = None) -> Dict[str, Any]:
    """
    Resolve the effective app registration credentials.

    Resolution order:
    1. CLI flag overrides (passed in directly)
    2. Named connection: explicit name, else workspace (ops/ppadmin.json),
       else global default (config.json)
    3. Environment variables (PP_TENANT_ID, PP_CLIENT_ID, PP_CLIENT_SECRET)
    """
    connections = load_connections()
    workspace = load_workspace()
    config = load_config()

    conn_name = (
        name
        or workspace.get("connection")
        or config.get("defaults", {}).get("connection")
    )

    conn: Dict[str, Any] = {}
    if conn_name:
        conn = dict(connections.get(conn_name, {}))

    for key, var in _ENV_VARS.items():
        if not conn.get(key):
            conn[key] = os.environ.get(var, "")

    # CLI overrides always win
    if cli_overrides:
        for k, v in cli_overrides.items():
            if v:
                conn[k] = v

    return conn


def resolve_monitor_settings(cli_overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Resolve failure monitor settings.

    Layers, later wins: built-in defaults, config.json "monitor",
    ops/ppadmin.json "monitor", CLI overrides.
    """
    settings = dict(MONITOR_DEFAULTS)
    settings.update(load_config().get("monitor", {}))
    settings.update(load_workspace().get("monitor", {}))
    if cli_overrides:
        for k, v in cli_overrides.items():
            if v not in (None, "", []):
                settings[k] = v
    return settings


# ---------------------------------------------------------------------------
# External tool helpers
# ---------------------------------------------------------------------------


def _az_cli_available() -> bool:
    return shutil.which("az") is not None


def _az_logged_in() -> Optional[str]:
    """Check if Azure CLI is logged in. Returns account name or None."""
    if not _az_cli_available():
        return None
    try:
        result = subprocess.run(
            ["az", "account", "show", "--query", "user.name", "-o", "tsv"],
            capture_output=True, text=True, timeout=10,
        )
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        pass
    return None


def pac_executable() -> Optional[str]:
    """Return the path of the Power Platform CLI, or None."""
    return shutil.which("pac") or shutil.which("pac.exe")


# ---------------------------------------------------------------------------
# Venv / package checks
# ---------------------------------------------------------------------------


def _venv_python() -> Optional[Path]:
    if sys.platform == "win32":
        p = VENV_DIR / "Scripts" / "python.exe"
    else:
        p = VENV_DIR / "bin" / "python3"
    return p if p.exists() else None


def _venv_has_packages() -> bool:
    """Check if required packages are importable from the venv."""
    vpy = _venv_python()
    if not vpy:
        return False
    try:
        result = subprocess.run(
            [str(vpy), "-c", "import azure.identity; import PowerPlatform.Dataverse; import requests"],
            capture_output=True, text=True, timeout=10,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


# ---------------------------------------------------------------------------
# Component checks
# ---------------------------------------------------------------------------


def check_venv() -> ComponentStatus:
    checks = []

    vpy = _venv_python()
    checks.append(Check(
        "Virtual environment",
        vpy is not None,
        str(vpy) if vpy else "not created",
    ))

    pkgs = _venv_has_packages()
    checks.append(Check(
        "Packages",
        pkgs,
        "installed" if pkgs else "missing (azure-identity, PowerPlatform-Dataverse-Client, requests)",
    ))

    ready = (vpy is not None) and pkgs
    instructions = ""
    if not ready:
        instructions = f"To set up:\n  python3 {PLUGIN_ROOT}/scripts/bootstrap.py setup"
    return ComponentStatus("venv", ready, checks, instructions)


def check_credentials(cli_overrides: Optional[Dict[str, Any]] = None) -> ComponentStatus:
    conn = resolve_connection(cli_overrides)
    checks = []

    has_tenant = bool(conn.get("tenant_id"))
    checks.append(Check("Tenant ID", has_tenant, conn["tenant_id"] if has_tenant else "not configured"))

    has_client = bool(conn.get("client_id"))
    checks.append(Check("Client ID", has_client, conn["client_id"] if has_client else "not configured"))

    has_secret = bool(conn.get("client_secret"))
    checks.append(Check("Client secret", has_secret, "configured" if has_secret else "not configured"))

    ready = has_tenant and has_client and has_secret
    instructions = ""
    if not ready:
        lines = ["To configure an app registration:"]
        lines.append(f"  python3 {PLUGIN_ROOT}/scripts/bootstrap.py add-connection <name>")
        lines.append("")
        lines.append("Or set environment variables:")
        for var in _ENV_VARS.values():
            lines.append(f"  {var}=<value>")
        lines.append(f"  App registrations: {_APP_REGISTRATION_URL}")
        instructions = "\n".join(lines)

    return ComponentStatus("credentials", ready, checks, instructions)


def check_monitor(cli_overrides: Optional[Dict[str, Any]] = None) -> ComponentStatus:
    settings = resolve_monitor_settings(cli_overrides)
    checks = []

    envs = settings.get("environments") or []
    checks.append(Check(
        "Environments",
        bool(envs),
        f"{len(envs)} configured" if envs else "none configured",
    ))

    for key, label in (("store_url", "Store URL"), ("store_table", "Store table"), ("column_prefix", "Column prefix")):
        value = settings.get(key)
        checks.append(Check(label, bool(value), value or "not configured"))

    ready = all(c.passed for c in checks)
    instructions = ""
    if not ready:
        lines = ["To configure the failure monitor:"]
        if not envs:
            lines.append(f"  python3 {PLUGIN_ROOT}/scripts/bootstrap.py add-environment <environment-id>")
        lines.append(f"  python3 {PLUGIN_ROOT}/scripts/bootstrap.py init-workspace "
                     "--store-url ... --store-table ... --column-prefix ...")
        instructions = "\n".join(lines)

    return ComponentStatus("monitor", ready, checks, instructions)


def check_pac() -> ComponentStatus:
    pac = pac_executable()
    checks = [Check("Power Platform CLI", pac is not None, pac or "not found")]
    instructions = ""
    if pac is None:
        instructions = (
            "To install the Power Platform CLI:\n"
            "  dotnet tool install --global Microsoft.PowerApps.CLI.Tool\n"
            "  (or https://aka.ms/PowerAppsCLI)"
        )
    return ComponentStatus("pac", pac is not None, checks, instructions)


def check_az() -> ComponentStatus:
    az_found = _az_cli_available()
    checks = [Check("Azure CLI", az_found, "installed" if az_found else "not found")]
    az_user = _az_logged_in()
    checks.append(Check("Azure CLI login", az_user is not None, az_user or "not logged in"))
    ready = az_user is not None
    instructions = "" if ready else "For --interactive auth:\n  az login"
    return ComponentStatus("az", ready, checks, instructions)


_COMPONENT_CHECKS = {
    "venv": check_venv,
    "credentials": check_credentials,
    "monitor": check_monitor,
    "pac": check_pac,
    "az": check_az,
}

COMPONENTS = list(_COMPONENT_CHECKS.keys())


def check_component(name: str) -> ComponentStatus:
    fn = _COMPONENT_CHECKS.get(name)
    if not fn:
        return ComponentStatus(name, False, [], f"Unknown component: {name}")
    return fn()


def check_all() -> Dict[str, ComponentStatus]:
    return {name: fn() for name, fn in _COMPONENT_CHECKS.items()}


# ---------------------------------------------------------------------------
# require: call at script startup
# ---------------------------------------------------------------------------


def print_failed_status(status: ComponentStatus) -> None:
    print(f"ERROR: {status.name} is not configured.\n", file=sys.stderr)
    for check in status.checks:
        mark = "✓" if check.passed else "✗"
        print(f"  {mark} {check.name}: {check.detail}", file=sys.stderr)
    if status.instructions:
        print(f"\n{status.instructions}", file=sys.stderr)


def require(status: ComponentStatus) -> ComponentStatus:
    """Exit with setup instructions if a component is not ready."""
    if not status.ready:
        print_failed_status(status)
        sys.exit(1)
    return status


# ---------------------------------------------------------------------------
# Status display
# ---------------------------------------------------------------------------

_COMPONENT_LABELS = {
    "venv": "Python venv",
    "credentials": "Credentials",
    "monitor": "Failure monitor",
    "pac": "Power Platform CLI",
    "az": "Azure CLI",
}


def print_status(statuses: Dict[str, ComponentStatus]) -> None:
    print("=== ppadmin-kit Status ===\n")
    for name, status in statuses.items():
        label = _COMPONENT_LABELS.get(name, name)
        mark = "✓" if status.ready else "✗"
        summary_parts = [c.detail for c in status.checks if c.passed and c.detail not in ("installed", "configured")]
        summary = ", ".join(summary_parts[:2]) if summary_parts else ""
        state = "Ready" if status.ready else "Not configured"
        line = f"{mark} {label:<20} {state}"
        if summary and status.ready:
            line += f" ({summary})"
        print(line)

        if not status.ready:
            for check in status.checks:
                if not check.passed:
                    print(f"    ✗ {check.name}: {check.detail}")
            if status.instructions:
                for inst_line in status.instructions.split("\n"):
                    print(f"    {inst_line}")
        print()

    ws = load_workspace()
    if ws:
        print("--- Workspace (ops/ppadmin.json) ---")
        if ws.get("connection"):
            print(f"  Connection: {ws['connection']}")
        for k, v in ws.get("monitor", {}).items():
            print(f"  monitor.{k}: {v}")
        print()
    else:
        print("--- Workspace ---")
        print("  No ops/ppadmin.json found in current directory.")
        print("  Create one to set the connection and monitor overrides.\n")
