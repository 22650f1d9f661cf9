"""Tests for Flow/BAP API record parsing, URLs and the HTTP trigger."""

from datetime import datetime, timezone
from unittest import mock

import pytest
import requests

from _shared.errors import FetchError, TriggerError
from _shared.flow_helpers import (
    Flow,
    FlowRun,
    flows_url,
    format_timestamp,
    list_environments,
    parse_timestamp,
    runs_url,
    sort_flows,
    summarize_environment,
    trigger_flow,
)

from conftest import FakeResponse, FakeSession


class TestTimestamps:
    def test_seven_digit_fraction(self):
        parsed = parse_timestamp("2024-05-01T10:00:05.1234567Z")
        assert parsed == datetime(2024, 5, 1, 10, 0, 5, 123456, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        assert parse_timestamp("2024-05-01T12:00:00+02:00") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)

    def test_empty_and_garbage(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("yesterday") is None

    def test_format(self):
        assert format_timestamp(datetime(2024, 5, 1, 10, 0, 0, 999, tzinfo=timezone.utc)) == "2024-05-01T10:00:00Z"


class TestRecords:
    def test_flow_from_api(self):
        f = Flow.from_api({"name": "abc", "properties": {"displayName": "Invoice sync", "state": "Started"}}, "env")
        assert f == Flow("abc", "Invoice sync", "env", "Started")

    def test_flow_without_display_name_uses_id(self):
        assert Flow.from_api({"name": "abc"}, "env").display_name == "abc"

    def test_run_from_api(self):
        raw = {
            "name": "08585",
            "properties": {
                "status": "Failed",
                "startTime": "2024-05-01T10:00:05Z",
                "endTime": "2024-05-01T10:01:00Z",
            },
        }
        r = FlowRun.from_api(raw, "flow", "env")
        assert r.run_id == "08585"
        assert r.failed
        assert not r.is_aborted
        assert r.end_time == datetime(2024, 5, 1, 10, 1, tzinfo=timezone.utc)

    def test_cancelled_run_is_aborted(self):
        r = FlowRun.from_api({"name": "x", "properties": {"status": "Cancelled"}}, "f", "e")
        assert r.is_aborted
        assert not r.failed

    def test_explicit_is_aborted_wins(self):
        r = FlowRun.from_api({"name": "x", "properties": {"status": "Failed", "isAborted": True}}, "f", "e")
        assert r.is_aborted

    def test_started_after_is_strict(self):
        threshold = datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
        r = FlowRun("x", "f", "e", "Failed", threshold)
        assert not r.started_after(threshold)
        assert not FlowRun("y", "f", "e", "Failed", None).started_after(threshold)

    def test_sort_flows(self):
        flows = [Flow("2", "B", "e"), Flow("3", "A", "e"), Flow("1", "A", "e")]
        assert [f.flow_id for f in sort_flows(flows)] == ["1", "3", "2"]


class TestUrls:
    def test_flows_url(self):
        assert flows_url("Default-123") == (
            "https://api.flow.microsoft.com/providers/Microsoft.ProcessSimple"
            "/scopes/admin/environments/Default-123/v2/flows?api-version=2016-11-01"
        )

    def test_runs_url_without_filter(self):
        url = runs_url("env", "flow", flow_api_base="https://emea.api.flow.microsoft.com/")
        assert url == (
            "https://emea.api.flow.microsoft.com/providers/Microsoft.ProcessSimple"
            "/environments/env/flows/flow/runs?api-version=2016-11-01"
        )

    def test_runs_url_with_filter(self):
        url = runs_url("env", "flow", datetime(2024, 5, 1, 10, tzinfo=timezone.utc))
        assert url.endswith("&%24filter=startTime%20gt%202024-05-01T10%3A00%3A00Z")


BAP_ENV = {
    "name": "Default-123",
    "location": "europe",
    "properties": {
        "displayName": "Contoso (default)",
        "environmentSku": "Default",
        "linkedEnvironmentMetadata": {"instanceUrl": "https://contoso.crm4.dynamics.com/"},
    },
}


class TestEnvironments:
    def test_summarize(self):
        env = summarize_environment(BAP_ENV)
        assert env["id"] == "Default-123"
        assert env["type"] == "Default"
        assert env["region"] == "europe"
        assert env["instance_url"] == "https://contoso.crm4.dynamics.com"

    def test_environment_without_dataverse(self):
        assert summarize_environment({"name": "x", "properties": {}})["instance_url"] == ""

    def test_null_fields_become_empty_strings(self):
        env = summarize_environment({"name": "x", "location": None, "properties": {"displayName": None}})
        assert env["display_name"] == ""
        assert env["region"] == ""

    def test_list_environments_follows_pages(self, flow_token):
        def get(url, kw):
            if "skiptoken" in url:
                return FakeResponse(200, {"value": [{"name": "second", "properties": {}}]})
            return FakeResponse(200, {"value": [BAP_ENV], "nextLink": url + "&skiptoken=1"})

        envs = list_environments(flow_token, session=FakeSession(get=get))
        assert [e["id"] for e in envs] == ["Default-123", "second"]

    def test_incomplete_listing_raises(self, flow_token):
        session = FakeSession(get=lambda url, kw: FakeResponse(401, {"error": {"message": "unauthorized"}}))
        with pytest.raises(FetchError):
            list_environments(flow_token, session=session)


class TestTriggerFlow:
    def test_posts_payload_with_bearer_token(self, flow_token):
        session = FakeSession(post=lambda url, kw: FakeResponse(202, text=""))
        resp = trigger_flow("https://prod.westeurope.logic.azure.com/workflows/x", flow_token, {"a": 1},
                            session=session)
        assert resp.status_code == 202
        _, url, kwargs = session.calls[0]
        assert kwargs["json"] == {"a": 1}
        assert kwargs["headers"]["Authorization"] == "Bearer flow-token"

    def test_empty_payload_sends_object(self, flow_token):
        session = FakeSession(post=lambda url, kw: FakeResponse(200, {"ok": True}))
        trigger_flow("https://example.test/trigger", flow_token, session=session)
        assert session.calls[0][2]["json"] == {}

    def test_error_response_raises_trigger_error(self, flow_token):
        session = FakeSession(post=lambda url, kw: FakeResponse(401, {"error": {"code": "MisMatchingOAuthClaims",
                                                                                 "message": "audience"}}))
        with pytest.raises(TriggerError, match="HTTP 401") as exc:
            trigger_flow("https://example.test/trigger", flow_token, session=session)
        assert exc.value.status_code == 401
        assert "MisMatchingOAuthClaims: audience" in str(exc.value)
        assert not exc.value.fatal

    def test_transport_error_raises_trigger_error(self, flow_token):
        def post(url, kw):
            raise requests.ConnectionError("name resolution failed")

        with pytest.raises(TriggerError, match="name resolution failed") as exc:
            trigger_flow("https://example.test/trigger", flow_token, session=FakeSession(post=post))
        assert exc.value.status_code is None

    def test_own_session_is_closed(self, flow_token):
        with mock.patch("_shared.flow_helpers.requests.Session") as session_cls:
            owned = session_cls.return_value.__enter__.return_value
            owned.post.return_value = FakeResponse(202, text="")
            resp = trigger_flow("https://example.test/trigger", flow_token)

        assert resp.status_code == 202
        session_cls.return_value.__exit__.assert_called_once()
