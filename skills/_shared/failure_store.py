"""Failure records in a custom Dataverse table.

One row per failed flow run, keyed by the run id column. Rows are created
once and never updated or deleted. The existence check and the insert are
two separate requests; if the table carries an alternate key on the run id
column, a duplicate rejected by Dataverse is reported as DUPLICATE rather
than a failure.
"""

import enum
import sys
from dataclasses import dataclass, field
from typing import Any, Dict
from urllib.parse import quote, urlencode

import requests

from _shared.auth_helpers import Token
from _shared.dataverse_helpers import odata_headers
from _shared.errors import DedupCheckError, InsertError
from _shared.flow_helpers import FlowRun, format_timestamp
from _shared.http_helpers import REQUEST_TIMEOUT, response_error

DATAVERSE_API_VERSION = "v9.2"

# Dataverse error codes for "record with these key values already exists"
_DUPLICATE_ERROR_CODES = {"0x80040237", "0x80060892"}
_DUPLICATE_STATUS_CODES = {409, 412}


class InsertOutcome(enum.Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    FAILED = "failed"

    @property
    def succeeded(self) -> bool:
        return self is InsertOutcome.CREATED


@dataclass
class FailureStore:
    """Connection details for the failure table of one Dataverse environment."""

    store_url: str
    table: str
    column_prefix: str
    token: Token
    session: requests.Session = field(default_factory=requests.Session)

    @property
    def collection_url(self) -> str:
        return f"{self.store_url.rstrip('/')}/api/data/{DATAVERSE_API_VERSION}/{self.table}"

    def column(self, name: str) -> str:
        return f"{self.column_prefix}_{name}"

    def headers(self) -> Dict[str, str]:
        return odata_headers(self.token)


def failure_row(run: FlowRun, store: FailureStore) -> Dict[str, Any]:
    """Map a flow run to the failure table's columns."""
    return {
        store.column("flowrunid"): run.run_id,
        store.column("starttime"): format_timestamp(run.start_time) if run.start_time else None,
        store.column("endtime"): format_timestamp(run.end_time) if run.end_time else None,
        store.column("runstatus"): run.status,
        store.column("isaborted"): run.is_aborted,
    }


def _key_filter(run_id: str, store: FailureStore) -> str:
    escaped = run_id.replace("'", "''")
    return f"{store.column('flowrunid')} eq '{escaped}'"


def _existence_url(run_id: str, store: FailureStore) -> str:
    params = {
        "$select": store.column("flowrunid"),
        "$filter": _key_filter(run_id, store),
        "$top": "1",
    }
    return f"{store.collection_url}?{urlencode(params, quote_via=quote)}"


def _query_existing(run_id: str, store: FailureStore):
    url = _existence_url(run_id, store)
    try:
        resp = store.session.get(url, headers=store.headers(), timeout=REQUEST_TIMEOUT)
    except requests.RequestException as e:
        raise DedupCheckError(run_id, detail=str(e)) from e
    if not resp.ok:
        raise DedupCheckError(run_id, detail=f"HTTP {resp.status_code}: {response_error(resp)}")
    try:
        return resp.json().get("value") or []
    except (ValueError, AttributeError) as e:
        raise DedupCheckError(run_id, detail="unexpected response body") from e


def exists_in_store(run_id: str, store: FailureStore, raise_on_error: bool = False) -> bool:
    """Return True iff a failure record for ``run_id`` already exists.

    If the query fails the error is printed and False is returned, so the
    caller goes on to insert. With ``raise_on_error`` the DedupCheckError is
    raised instead.
    """
    try:
        rows = _query_existing(run_id, store)
    except DedupCheckError as e:
        if raise_on_error:
            raise
        print(f"    ✗ {e} (treating as not recorded)", file=sys.stderr)
        return False
    return len(rows) > 0


def _is_duplicate_rejection(resp) -> bool:
    if resp.status_code not in _DUPLICATE_STATUS_CODES:
        return False
    try:
        code = (resp.json().get("error") or {}).get("code") or ""
    except (ValueError, AttributeError):
        code = ""
    # 412 counts only with a duplicate-key error code
    return resp.status_code == 409 or str(code).lower() in _DUPLICATE_ERROR_CODES


def insert_failure_record(run: FlowRun, store: FailureStore) -> InsertOutcome:
    """Create one failure record. Never retried; failures are printed, not raised."""
    headers = {**store.headers(), "Content-Type": "application/json"}
    try:
        resp = store.session.post(
            store.collection_url,
            headers=headers,
            json=failure_row(run, store),
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as e:
        print(f"    ✗ {InsertError(run.run_id, detail=str(e))}", file=sys.stderr)
        return InsertOutcome.FAILED

    if resp.ok:
        return InsertOutcome.CREATED
    if _is_duplicate_rejection(resp):
        print(f"    Run {run.run_id} already recorded (duplicate key)", file=sys.stderr)
        return InsertOutcome.DUPLICATE

    error = InsertError(run.run_id, resp.status_code, detail=response_error(resp))
    print(f"    ✗ {error}", file=sys.stderr)
    return InsertOutcome.FAILED
