"""Flow failure monitor: poll run history, record new failures in Dataverse.

For every configured environment, list its flows, fetch each flow's runs
started inside the polling window, keep the failed ones, and insert a
failure record for each run id the store has not seen yet. Everything runs
sequentially; an error in one flow, run or environment is printed and
counted without stopping its siblings.
"""

import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

from _shared.auth_helpers import FLOW_API_RESOURCE, Token, acquire_token
from _shared.errors import ConfigError, DedupCheckError
from _shared.failure_store import FailureStore, InsertOutcome, exists_in_store, insert_failure_record
from _shared.flow_helpers import (
    FLOW_API_BASE,
    Flow,
    FlowRun,
    flow_headers,
    flows_url,
    format_timestamp,
    runs_url,
    sort_flows,
)
from _shared.http_helpers import fetch_all_pages

ON_DEDUP_ERROR_CHOICES = ("insert", "skip")


@dataclass
class MonitorConfig:
    """Validated settings for one monitor run."""

    tenant_id: str
    client_id: str
    client_secret: str = field(repr=False)
    environments: List[str] = field(default_factory=list)
    store_url: str = ""
    store_table: str = ""
    column_prefix: str = ""
    window_minutes: int = 10
    flow_api_base: str = FLOW_API_BASE
    on_dedup_error: str = "insert"

    @classmethod
    def from_settings(cls, connection: Dict[str, Any], settings: Dict[str, Any]) -> "MonitorConfig":
        envs = settings.get("environments") or []
        if isinstance(envs, str):
            envs = [e.strip() for e in envs.split(",")]
        return cls(
            tenant_id=connection.get("tenant_id") or "",
            client_id=connection.get("client_id") or "",
            client_secret=connection.get("client_secret") or "",
            environments=[e for e in envs if e],
            store_url=(settings.get("store_url") or "").rstrip("/"),
            store_table=settings.get("store_table") or "",
            column_prefix=(settings.get("column_prefix") or "").rstrip("_"),
            window_minutes=settings.get("window_minutes", 10),
            flow_api_base=settings.get("flow_api_base") or FLOW_API_BASE,
            on_dedup_error=settings.get("on_dedup_error") or "insert",
        )

    def validate(self) -> "MonitorConfig":
        problems = []
        if not self.environments:
            problems.append("at least one environment is required")
        if len(set(self.environments)) != len(self.environments):
            problems.append("environment list contains duplicates")
        for name in ("tenant_id", "client_id", "client_secret"):
            if not getattr(self, name):
                problems.append(f"{name} is required")
        if not self.store_url.startswith("https://"):
            problems.append("store_url must be an https:// Dataverse URL")
        if not self.store_table:
            problems.append("store_table is required")
        if not self.column_prefix:
            problems.append("column_prefix is required")
        try:
            minutes = int(self.window_minutes)
        except (TypeError, ValueError):
            minutes = 0
        if minutes <= 0:
            problems.append("window_minutes must be a positive integer")
        else:
            self.window_minutes = minutes
        if self.on_dedup_error not in ON_DEDUP_ERROR_CHOICES:
            problems.append(f"on_dedup_error must be one of {', '.join(ON_DEDUP_ERROR_CHOICES)}")
        if problems:
            raise ConfigError(problems)
        return self


@dataclass
class EnvironmentResult:
    environment_id: str
    succeeded: bool = True
    error: str = ""
    flows_checked: int = 0
    flow_fetch_errors: int = 0
    failures_observed: int = 0
    records_added: int = 0
    already_recorded: int = 0
    insert_errors: int = 0
    dedup_errors: int = 0


@dataclass
class RunSummary:
    window_start: datetime
    environments: List[EnvironmentResult] = field(default_factory=list)

    def _total(self, attr: str) -> int:
        return sum(getattr(r, attr) for r in self.environments)

    @property
    def total_failures(self) -> int:
        return self._total("failures_observed")

    @property
    def new_failures(self) -> int:
        return self._total("records_added")

    @property
    def failed_environments(self) -> List[str]:
        return [r.environment_id for r in self.environments if not r.succeeded]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "WindowStart": format_timestamp(self.window_start),
            "TotalFailuresProcessed": self.total_failures,
            "NewFailuresAdded": self.new_failures,
            "AlreadyRecorded": self._total("already_recorded"),
            "InsertErrors": self._total("insert_errors"),
            "DedupCheckErrors": self._total("dedup_errors"),
            "FlowFetchErrors": self._total("flow_fetch_errors"),
            "EnvironmentsSucceeded": len(self.environments) - len(self.failed_environments),
            "EnvironmentsFailed": len(self.failed_environments),
            "Environments": [asdict(r) for r in self.environments],
        }


def window_start_for(minutes: int, now: Optional[datetime] = None) -> datetime:
    """Start of the polling window, computed once per run from UTC now."""
    now = now or datetime.now(timezone.utc)
    return now - timedelta(minutes=minutes)


class FailureMonitor:
    """Polls flow runs for a list of environments and records new failures."""

    def __init__(
        self,
        config: MonitorConfig,
        flow_token: Token,
        store: FailureStore,
        window_start: datetime,
        session: Optional[requests.Session] = None,
    ):
        self.config = config
        self.flow_token = flow_token
        self.store = store
        self.window_start = window_start
        self.session = session or store.session

    def run(self) -> RunSummary:
        summary = RunSummary(window_start=self.window_start)
        print(
            f"Checking {len(self.config.environments)} environment(s) for failures since "
            f"{format_timestamp(self.window_start)}",
            file=sys.stderr,
        )
        for environment_id in self.config.environments:
            result = EnvironmentResult(environment_id)
            try:
                self.process_environment(environment_id, result)
            except Exception as e:
                result.succeeded = False
                result.error = str(e)
                print(f"  ✗ {environment_id} aborted: {e}", file=sys.stderr)
            summary.environments.append(result)
        return summary

    def process_environment(self, environment_id: str,
                            result: Optional[EnvironmentResult] = None) -> EnvironmentResult:
        if result is None:
            result = EnvironmentResult(environment_id)
        print(f"\n[{environment_id}]", file=sys.stderr)

        flows = self.fetch_flows(environment_id, result)
        for flow in flows:
            result.flows_checked += 1
            for run in self.failed_runs(flow, result):
                result.failures_observed += 1
                self.record_failure(run, result)

        mark = "✓" if result.succeeded else "✗"
        print(
            f"  {mark} {result.flows_checked} flow(s), {result.failures_observed} failure(s), "
            f"{result.records_added} new",
            file=sys.stderr,
        )
        return result

    def fetch_flows(self, environment_id: str, result: EnvironmentResult) -> List[Flow]:
        pages = fetch_all_pages(
            flows_url(environment_id, self.config.flow_api_base),
            flow_headers(self.flow_token),
            session=self.session,
            label=f"flows of {environment_id}",
        )
        flows = [Flow.from_api(raw, environment_id) for raw in pages]
        if pages.error:
            result.succeeded = False
            result.error = str(pages.error)
        return sort_flows(flows)

    def failed_runs(self, flow: Flow, result: EnvironmentResult) -> List[FlowRun]:
        """Failed runs of ``flow`` started after the window start.

        The time filter is sent to the server; status is checked here.
        """
        pages = fetch_all_pages(
            runs_url(flow.environment_id, flow.flow_id, self.window_start, self.config.flow_api_base),
            flow_headers(self.flow_token),
            session=self.session,
            label=f"runs of '{flow.display_name}'",
        )
        failed = []
        try:
            for raw in pages:
                run = FlowRun.from_api(raw, flow.flow_id, flow.environment_id)
                if run.failed and run.started_after(self.window_start):
                    failed.append(run)
        except (AttributeError, TypeError) as e:
            print(f"  ✗ Unreadable run in '{flow.display_name}': {e}", file=sys.stderr)
            result.flow_fetch_errors += 1
            return failed
        if pages.error:
            result.flow_fetch_errors += 1
        if failed:
            print(f"  {flow.display_name}: {len(failed)} failed run(s)", file=sys.stderr)
        return failed

    def record_failure(self, run: FlowRun, result: EnvironmentResult) -> None:
        try:
            exists = exists_in_store(run.run_id, self.store, raise_on_error=True)
        except DedupCheckError as e:
            result.dedup_errors += 1
            if self.config.on_dedup_error == "skip":
                print(f"    ✗ {e} (skipping insert)", file=sys.stderr)
                return
            print(f"    ✗ {e} (treating as not recorded)", file=sys.stderr)
            exists = False

        if exists:
            result.already_recorded += 1
            return

        outcome = insert_failure_record(run, self.store)
        if outcome is InsertOutcome.CREATED:
            result.records_added += 1
            print(f"    + Recorded failed run {run.run_id}", file=sys.stderr)
        elif outcome is InsertOutcome.DUPLICATE:
            result.already_recorded += 1
        else:
            result.insert_errors += 1


def run_monitor(config: MonitorConfig, now: Optional[datetime] = None,
                session: Optional[requests.Session] = None) -> RunSummary:
    """Acquire both tokens, then poll every configured environment.

    AuthError propagates: without tokens nothing else can run.
    """
    config.validate()
    window_start = window_start_for(config.window_minutes, now)

    print("Acquiring tokens...", file=sys.stderr)
    flow_token = acquire_token(config.tenant_id, config.client_id, config.client_secret, FLOW_API_RESOURCE)
    store_token = acquire_token(config.tenant_id, config.client_id, config.client_secret, config.store_url)

    if session is None:
        with requests.Session() as owned:
            return _monitor_with(config, flow_token, store_token, window_start, owned)
    return _monitor_with(config, flow_token, store_token, window_start, session)


def _monitor_with(config: MonitorConfig, flow_token: Token, store_token: Token,
                  window_start: datetime, session: requests.Session) -> RunSummary:
    store = FailureStore(
        store_url=config.store_url,
        table=config.store_table,
        column_prefix=config.column_prefix,
        token=store_token,
        session=session,
    )
    return FailureMonitor(config, flow_token, store, window_start, session=session).run()


def print_summary(summary: RunSummary) -> None:
    data = summary.as_dict()
    print("\n=== Summary ===", file=sys.stderr)
    for key, value in data.items():
        if key != "Environments":
            print(f"  {key}: {value}", file=sys.stderr)
    for env in summary.environments:
        mark = "✓" if env.succeeded else "✗"
        line = f"  {mark} {env.environment_id}"
        if env.error:
            line += f": {env.error}"
        print(line, file=sys.stderr)
