"""Helpers for the Power Automate Flow Management API and the BAP admin API.

Provides functions to:
- Build flow and flow-run collection URLs for an environment
- Parse flows and flow runs into typed records
- Enumerate Power Platform environments via the BAP admin API
- Trigger an HTTP-triggered flow with an OAuth bearer token
"""

import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import requests

from _shared.auth_helpers import BAP_API_RESOURCE, Token
from _shared.errors import TriggerError
from _shared.http_helpers import REQUEST_TIMEOUT, fetch_all_pages, response_error

FLOW_API_BASE = "https://api.flow.microsoft.com"
FLOW_API_VERSION = "2016-11-01"
BAP_API_VERSION = "2020-10-01"

_FRACTION_RE = re.compile(r"\.(\d+)")


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an API timestamp (``2024-05-01T10:00:00.1234567Z``) to an aware UTC datetime."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # Flow API emits 7 fractional digits; datetime accepts at most 6
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with a ``Z`` suffix, as used in filters."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Flow:
    flow_id: str
    display_name: str
    environment_id: str
    state: str = ""

    @classmethod
    def from_api(cls, raw: Dict[str, Any], environment_id: str) -> "Flow":
        props = raw.get("properties") or {}
        return cls(
            flow_id=raw.get("name", ""),
            display_name=props.get("displayName") or raw.get("name", ""),
            environment_id=environment_id,
            state=props.get("state", ""),
        )


@dataclass(frozen=True)
class FlowRun:
    run_id: str
    flow_id: str
    environment_id: str
    status: str
    start_time: Optional[datetime]
    end_time: Optional[datetime] = None
    is_aborted: bool = False

    @property
    def failed(self) -> bool:
        return self.status == "Failed"

    def started_after(self, threshold: datetime) -> bool:
        return self.start_time is not None and self.start_time > threshold

    @classmethod
    def from_api(cls, raw: Dict[str, Any], flow_id: str, environment_id: str) -> "FlowRun":
        props = raw.get("properties") or {}
        status = props.get("status", "")
        aborted = props.get("isAborted")
        if aborted is None:
            aborted = status == "Cancelled"
        return cls(
            run_id=raw.get("name", ""),
            flow_id=flow_id,
            environment_id=environment_id,
            status=status,
            start_time=parse_timestamp(props.get("startTime")),
            end_time=parse_timestamp(props.get("endTime")),
            is_aborted=bool(aborted),
        )


def sort_flows(flows: List[Flow]) -> List[Flow]:
    """Order flows by display name, ties broken by flow id."""
    return sorted(flows, key=lambda f: (f.display_name, f.flow_id))


# ---------------------------------------------------------------------------
# Flow Management API
# ---------------------------------------------------------------------------


def flow_headers(token: Token) -> Dict[str, str]:
    return {**token.auth_header(), "Accept": "application/json"}


def flows_url(environment_id: str, flow_api_base: str = FLOW_API_BASE) -> str:
    """Admin-scope listing of all flows in an environment."""
    return (
        f"{flow_api_base.rstrip('/')}/providers/Microsoft.ProcessSimple"
        f"/scopes/admin/environments/{quote(environment_id, safe='')}"
        f"/v2/flows?api-version={FLOW_API_VERSION}"
    )


def runs_url(
    environment_id: str,
    flow_id: str,
    since: Optional[datetime] = None,
    flow_api_base: str = FLOW_API_BASE,
) -> str:
    """Run history for one flow, optionally restricted to runs started after ``since``."""
    params: Dict[str, str] = {"api-version": FLOW_API_VERSION}
    if since is not None:
        params["$filter"] = f"startTime gt {format_timestamp(since)}"
    return (
        f"{flow_api_base.rstrip('/')}/providers/Microsoft.ProcessSimple"
        f"/environments/{quote(environment_id, safe='')}"
        f"/flows/{quote(flow_id, safe='')}"
        f"/runs?{urlencode(params, quote_via=quote)}"
    )


# ---------------------------------------------------------------------------
# BAP admin API
# ---------------------------------------------------------------------------


def environments_url() -> str:
    return (
        f"{BAP_API_RESOURCE}/providers/Microsoft.BusinessAppPlatform"
        f"/scopes/admin/environments?api-version={BAP_API_VERSION}"
    )


def summarize_environment(env: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a BAP environment record to the fields the skills report on."""
    props = env.get("properties") or {}
    meta = props.get("linkedEnvironmentMetadata") or {}
    return {
        "id": env.get("name", ""),
        "display_name": props.get("displayName") or "",
        "type": props.get("environmentSku") or "",
        "region": env.get("location") or "",
        "instance_url": (meta.get("instanceUrl") or "").rstrip("/"),
        "flow_api_base": ((props.get("runtimeEndpoints") or {}).get("microsoft.Flow") or "").rstrip("/"),
    }


def list_environments(token: Token, session: Optional[requests.Session] = None) -> List[Dict[str, Any]]:
    """Enumerate environments visible to the caller via the BAP admin API.

    Raises the pager's FetchError if the listing is incomplete.
    """
    pages = fetch_all_pages(environments_url(), flow_headers(token), session=session, label="environments")
    envs = [summarize_environment(env) for env in pages]
    if pages.error:
        raise pages.error
    print(f"  Found {len(envs)} environment(s)", file=sys.stderr)
    return envs


# ---------------------------------------------------------------------------
# HTTP trigger
# ---------------------------------------------------------------------------


def trigger_flow(
    trigger_url: str,
    token: Token,
    payload: Optional[Any] = None,
    session: Optional[requests.Session] = None,
) -> requests.Response:
    """POST ``payload`` as JSON to an OAuth-protected HTTP trigger URL.

    Returns the response; raises TriggerError with the upstream body on
    non-2xx or when the request cannot be sent.
    """
    if session is None:
        with requests.Session() as owned:
            return trigger_flow(trigger_url, token, payload, session=owned)

    headers = {**token.auth_header(), "Content-Type": "application/json"}
    try:
        resp = session.post(trigger_url, headers=headers, json=payload if payload is not None else {},
                            timeout=REQUEST_TIMEOUT)
    except requests.RequestException as e:
        raise TriggerError(trigger_url, detail=str(e)) from e
    if not resp.ok:
        raise TriggerError(trigger_url, resp.status_code, detail=response_error(resp))
    return resp
