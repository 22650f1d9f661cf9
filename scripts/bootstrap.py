#!/usr/bin/env python3
"""ppadmin-kit bootstrap: venv setup, connection and monitor config, status.

Cross-platform (macOS, Linux, Windows).

Usage:
    python3 scripts/bootstrap.py setup
    python3 scripts/bootstrap.py status
    python3 scripts/bootstrap.py check <component>
    python3 scripts/bootstrap.py add-connection <name> [--tenant-id ...] [--client-id ...] [--client-secret ...]
    python3 scripts/bootstrap.py remove-connection <name>
    python3 scripts/bootstrap.py set-default <name>
    python3 scripts/bootstrap.py list-connections
    python3 scripts/bootstrap.py init-workspace [--connection ...] [--store-url ...] [--store-table ...] ...
    python3 scripts/bootstrap.py add-environment <environment-id> [--workspace]
    python3 scripts/bootstrap.py remove-environment <environment-id> [--workspace]
"""

import argparse
import json
import subprocess
import sys
from pathlib import Path

PLUGIN_ROOT = Path(__file__).resolve().parent.parent
VENV_DIR = PLUGIN_ROOT / ".venv"
REQUIREMENTS = PLUGIN_ROOT / "requirements.txt"

# Import preflight from skills/_shared/
sys.path.insert(0, str(PLUGIN_ROOT / "skills"))
from _shared.preflight import (
    COMPONENTS,
    check_all,
    check_component,
    load_config,
    load_connections,
    load_workspace,
    print_status,
    save_config,
    save_connections,
    save_workspace,
)


def _venv_python() -> Path:
    if sys.platform == "win32":
        return VENV_DIR / "Scripts" / "python.exe"
    return VENV_DIR / "bin" / "python3"


def mask_secret(value: str) -> str:
    value = str(value)
    return value[:4] + "***" if len(value) > 4 else "***"


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_setup(_args: argparse.Namespace) -> None:
    """Create virtual environment and install dependencies."""
    venv_python = _venv_python()

    if not venv_python.exists():
        print(f"Creating virtual environment at {VENV_DIR} ...", file=sys.stderr)
        subprocess.check_call([sys.executable, "-m", "venv", str(VENV_DIR)])
    else:
        print(f"Virtual environment already exists at {VENV_DIR}", file=sys.stderr)

    if REQUIREMENTS.exists():
        print("Installing dependencies ...", file=sys.stderr)
        subprocess.check_call([
            str(venv_python), "-m", "pip", "install",
            "--quiet", "--upgrade", "-r", str(REQUIREMENTS),
        ])
    else:
        print(f"No requirements.txt found at {REQUIREMENTS}", file=sys.stderr)

    print(str(venv_python))


def cmd_status(_args: argparse.Namespace) -> None:
    """Check all components and print readiness report."""
    print_status(check_all())


def cmd_check(args: argparse.Namespace) -> None:
    """Check a single component."""
    status = check_component(args.component)
    print_status({args.component: status})
    if not status.ready:
        sys.exit(1)


def cmd_add_connection(args: argparse.Namespace) -> None:
    """Add a named app registration. Uses CLI flags if provided, else interactive prompts."""
    connections = load_connections()
    conn = _build_connection(args) or _prompt_connection()

    connections[args.name] = conn
    save_connections(connections)
    print(f"Connection '{args.name}' saved.", file=sys.stderr)

    # First connection becomes the default
    config = load_config()
    if not config.get("defaults", {}).get("connection"):
        config.setdefault("defaults", {})["connection"] = args.name
        save_config(config)
        print(f"Set '{args.name}' as default connection.", file=sys.stderr)


def cmd_remove_connection(args: argparse.Namespace) -> None:
    """Remove a named connection."""
    connections = load_connections()
    if args.name not in connections:
        print(f"Connection '{args.name}' not found.", file=sys.stderr)
        sys.exit(1)

    del connections[args.name]
    save_connections(connections)
    print(f"Connection '{args.name}' removed.", file=sys.stderr)

    config = load_config()
    if config.get("defaults", {}).get("connection") == args.name:
        config["defaults"].pop("connection", None)
        save_config(config)
        print(f"Default connection cleared (was '{args.name}').", file=sys.stderr)


def cmd_set_default(args: argparse.Namespace) -> None:
    """Set the default connection."""
    if args.name not in load_connections():
        print(f"Connection '{args.name}' not found.", file=sys.stderr)
        sys.exit(1)

    config = load_config()
    config.setdefault("defaults", {})["connection"] = args.name
    save_config(config)
    print(f"Default connection set to '{args.name}'.", file=sys.stderr)


def cmd_list_connections(_args: argparse.Namespace) -> None:
    """List all connections (secrets masked)."""
    connections = load_connections()
    default_name = load_config().get("defaults", {}).get("connection", "")

    if not connections:
        print("No connections configured.")
        print(f"  Run: python3 {PLUGIN_ROOT}/scripts/bootstrap.py add-connection <name>")
        return

    for name, conn in connections.items():
        marker = " (default)" if name == default_name else ""
        print(f"\n{name}{marker}:")
        for k, v in conn.items():
            if k == "client_secret":
                v = mask_secret(v)
            print(f"  {k}: {v}")


def cmd_init_workspace(args: argparse.Namespace) -> None:
    """Create or update ops/ppadmin.json in the current working directory."""
    ws = load_workspace()

    if args.connection:
        ws["connection"] = args.connection

    monitor = ws.get("monitor", {})
    if args.store_url:
        monitor["store_url"] = args.store_url.rstrip("/")
    if args.store_table:
        monitor["store_table"] = args.store_table
    if args.column_prefix:
        monitor["column_prefix"] = args.column_prefix.rstrip("_")
    if args.window_minutes:
        monitor["window_minutes"] = args.window_minutes
    if args.on_dedup_error:
        monitor["on_dedup_error"] = args.on_dedup_error
    if monitor:
        ws["monitor"] = monitor

    if not ws:
        print("No options provided. Use --connection, --store-url, --store-table, --column-prefix.",
              file=sys.stderr)
        sys.exit(1)

    save_workspace(ws)
    path = Path.cwd() / "ops" / "ppadmin.json"
    print(f"Workspace config written to {path}", file=sys.stderr)
    print(json.dumps(ws, indent=2))


def _monitor_environments(workspace: bool):
    """Return (container dict, monitor block) for the global or workspace config."""
    data = load_workspace() if workspace else load_config()
    monitor = data.setdefault("monitor", {})
    monitor.setdefault("environments", [])
    return data, monitor


def _save_monitor(data, workspace: bool) -> None:
    if workspace:
        save_workspace(data)
    else:
        save_config(data)


def cmd_add_environment(args: argparse.Namespace) -> None:
    """Add an environment id to the monitored list."""
    data, monitor = _monitor_environments(args.workspace)
    if args.environment_id in monitor["environments"]:
        print(f"Environment '{args.environment_id}' is already monitored.", file=sys.stderr)
        return
    monitor["environments"].append(args.environment_id)
    _save_monitor(data, args.workspace)
    print(f"Environment '{args.environment_id}' added ({len(monitor['environments'])} monitored).",
          file=sys.stderr)


def cmd_remove_environment(args: argparse.Namespace) -> None:
    """Remove an environment id from the monitored list."""
    data, monitor = _monitor_environments(args.workspace)
    if args.environment_id not in monitor["environments"]:
        print(f"Environment '{args.environment_id}' is not monitored.", file=sys.stderr)
        sys.exit(1)
    monitor["environments"].remove(args.environment_id)
    _save_monitor(data, args.workspace)
    print(f"Environment '{args.environment_id}' removed.", file=sys.stderr)


# ---------------------------------------------------------------------------
# Non-interactive builder / interactive prompt
# ---------------------------------------------------------------------------


def _build_connection(args: argparse.Namespace) -> dict | None:
    tenant_id = getattr(args, "tenant_id", None)
    client_id = getattr(args, "client_id", None)
    client_secret = getattr(args, "client_secret", None)
    if tenant_id and client_id and client_secret:
        return {"tenant_id": tenant_id, "client_id": client_id, "client_secret": client_secret}
    if any([tenant_id, client_id, client_secret]):
        print("A connection requires all of: --tenant-id, --client-id, --client-secret", file=sys.stderr)
        sys.exit(1)
    return None


def _prompt(label: str, default: str = "", secret: bool = False) -> str:
    """Prompt for input with optional default. Uses getpass for secrets."""
    suffix = f" [{default}]" if default else ""
    if secret:
        import getpass
        value = getpass.getpass(f"{label}{suffix}: ").strip()
    else:
        value = input(f"{label}{suffix}: ").strip()
    return value or default


def _prompt_connection() -> dict:
    print("\n--- App Registration Setup ---")
    print("The app needs Power Platform admin API and Dataverse application user access.\n")
    tenant_id = _prompt("Tenant ID")
    client_id = _prompt("Client (application) ID")
    client_secret = _prompt("Client secret", secret=True)
    if not all([tenant_id, client_id, client_secret]):
        print("All fields are required.", file=sys.stderr)
        sys.exit(1)
    return {"tenant_id": tenant_id, "client_id": client_id, "client_secret": client_secret}


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = argparse.ArgumentParser(
        description="ppadmin-kit bootstrap: venv setup, connection and monitor config, status.",
    )
    sub = parser.add_subparsers(dest="command")
    sub.required = True

    sub.add_parser("setup", help="Create venv and install dependencies")
    sub.add_parser("status", help="Check all components and print readiness report")

    p_check = sub.add_parser("check", help="Check a single component")
    p_check.add_argument("component", choices=COMPONENTS)

    p_add = sub.add_parser("add-connection", help="Add a named app registration")
    p_add.add_argument("name", help="Connection name (e.g. 'main', 'customer-abc')")
    p_add.add_argument("--tenant-id", dest="tenant_id", help="Azure AD tenant ID")
    p_add.add_argument("--client-id", dest="client_id", help="App registration client ID")
    p_add.add_argument("--client-secret", dest="client_secret", help="App registration client secret")

    p_rm = sub.add_parser("remove-connection", help="Remove a named connection")
    p_rm.add_argument("name")

    p_def = sub.add_parser("set-default", help="Set the default connection")
    p_def.add_argument("name")

    sub.add_parser("list-connections", help="List all connections (secrets masked)")

    p_ws = sub.add_parser("init-workspace", help="Create/update ops/ppadmin.json")
    p_ws.add_argument("--connection", help="Connection name for this workspace")
    p_ws.add_argument("--store-url", dest="store_url", help="Dataverse URL holding the failure table")
    p_ws.add_argument("--store-table", dest="store_table", help="Failure table entity set name")
    p_ws.add_argument("--column-prefix", dest="column_prefix", help="Failure table column prefix")
    p_ws.add_argument("--window-minutes", dest="window_minutes", type=int, help="Polling window in minutes")
    p_ws.add_argument("--on-dedup-error", dest="on_dedup_error", choices=["insert", "skip"],
                      help="Behaviour when the duplicate check fails")

    for cmd, help_text in (("add-environment", "Add an environment to the monitor"),
                           ("remove-environment", "Remove an environment from the monitor")):
        p_env = sub.add_parser(cmd, help=help_text)
        p_env.add_argument("environment_id")
        p_env.add_argument("--workspace", action="store_true",
                           help="Edit ops/ppadmin.json instead of the global config.json")

    args = parser.parse_args()

    dispatch = {
        "setup": cmd_setup,
        "status": cmd_status,
        "check": cmd_check,
        "add-connection": cmd_add_connection,
        "remove-connection": cmd_remove_connection,
        "set-default": cmd_set_default,
        "list-connections": cmd_list_connections,
        "init-workspace": cmd_init_workspace,
        "add-environment": cmd_add_environment,
        "remove-environment": cmd_remove_environment,
    }
    dispatch[args.command](args)


if __name__ == "__main__":
    main()
