"""Tests for the failure table existence check and insert."""

from datetime import datetime, timezone

import pytest
import requests

from _shared.errors import DedupCheckError
from _shared.failure_store import (
    FailureStore,
    InsertOutcome,
    exists_in_store,
    failure_row,
    insert_failure_record,
)
from _shared.flow_helpers import FlowRun

from conftest import FakeResponse, FakeSession

STORE_URL = "https://org.crm.dynamics.com"


def make_store(token, session):
    return FailureStore(STORE_URL, "cr123_flowfailures", "cr123", token, session=session)


def make_run(run_id="08585-run-1", **overrides):
    values = dict(
        run_id=run_id,
        flow_id="flow-1",
        environment_id="env-1",
        status="Failed",
        start_time=datetime(2024, 5, 1, 10, 0, 5, tzinfo=timezone.utc),
        end_time=datetime(2024, 5, 1, 10, 1, 0, tzinfo=timezone.utc),
        is_aborted=False,
    )
    values.update(overrides)
    return FlowRun(**values)


class TestFailureStore:
    def test_collection_url(self, store_token):
        store = make_store(store_token, FakeSession())
        assert store.collection_url == "https://org.crm.dynamics.com/api/data/v9.2/cr123_flowfailures"

    def test_headers_use_store_token(self, store_token):
        headers = make_store(store_token, FakeSession()).headers()
        assert headers["Authorization"] == "Bearer store-token"
        assert headers["OData-Version"] == "4.0"


class TestFailureRow:
    def test_maps_prefixed_columns(self, store_token):
        row = failure_row(make_run(), make_store(store_token, FakeSession()))
        assert row == {
            "cr123_flowrunid": "08585-run-1",
            "cr123_starttime": "2024-05-01T10:00:05Z",
            "cr123_endtime": "2024-05-01T10:01:00Z",
            "cr123_runstatus": "Failed",
            "cr123_isaborted": False,
        }

    def test_running_run_has_null_end_time(self, store_token):
        row = failure_row(make_run(end_time=None), make_store(store_token, FakeSession()))
        assert row["cr123_endtime"] is None


class TestExistsInStore:
    def test_found(self, store_token):
        session = FakeSession(get=lambda url, kw: FakeResponse(200, {"value": [{"cr123_flowrunid": "r"}]}))
        assert exists_in_store("r", make_store(store_token, session)) is True

    def test_not_found(self, store_token):
        session = FakeSession(get=lambda url, kw: FakeResponse(200, {"value": []}))
        assert exists_in_store("r", make_store(store_token, session)) is False

    def test_query_filters_on_run_id(self, store_token):
        session = FakeSession(get=lambda url, kw: FakeResponse(200, {"value": []}))
        exists_in_store("run-42", make_store(store_token, session))
        url = session.urls("GET")[0]
        assert url.startswith(STORE_URL + "/api/data/v9.2/cr123_flowfailures?")
        assert "%24filter=cr123_flowrunid%20eq%20%27run-42%27" in url
        assert "%24top=1" in url

    def test_quotes_escaped_in_filter(self, store_token):
        session = FakeSession(get=lambda url, kw: FakeResponse(200, {"value": []}))
        exists_in_store("o'brien", make_store(store_token, session))
        assert "%27o%27%27brien%27" in session.urls("GET")[0]

    def test_error_treated_as_not_recorded(self, store_token, capsys):
        session = FakeSession(get=lambda url, kw: FakeResponse(500, {"error": {"message": "down"}}))
        assert exists_in_store("r", make_store(store_token, session)) is False
        assert "treating as not recorded" in capsys.readouterr().err

    def test_transport_error_treated_as_not_recorded(self, store_token):
        def get(url, kw):
            raise requests.Timeout("read timed out")

        assert exists_in_store("r", make_store(store_token, FakeSession(get=get))) is False

    def test_raise_on_error(self, store_token):
        session = FakeSession(get=lambda url, kw: FakeResponse(503, text="unavailable"))
        with pytest.raises(DedupCheckError) as exc:
            exists_in_store("r", make_store(store_token, session), raise_on_error=True)
        assert exc.value.run_id == "r"
        assert not exc.value.fatal


class TestInsertFailureRecord:
    def test_created(self, store_token):
        session = FakeSession(post=lambda url, kw: FakeResponse(204, text=""))
        outcome = insert_failure_record(make_run(), make_store(store_token, session))

        assert outcome is InsertOutcome.CREATED
        assert outcome.succeeded
        _, url, kwargs = session.calls[0]
        assert url == STORE_URL + "/api/data/v9.2/cr123_flowfailures"
        assert kwargs["json"]["cr123_flowrunid"] == "08585-run-1"
        assert kwargs["headers"]["Content-Type"] == "application/json"

    def test_conflict_is_duplicate(self, store_token):
        session = FakeSession(post=lambda url, kw: FakeResponse(409, {"error": {"code": "0x80040237"}}))
        outcome = insert_failure_record(make_run(), make_store(store_token, session))
        assert outcome is InsertOutcome.DUPLICATE
        assert not outcome.succeeded

    def test_precondition_with_duplicate_code_is_duplicate(self, store_token):
        session = FakeSession(
            post=lambda url, kw: FakeResponse(412, {"error": {"code": "0x80060892", "message": "exists"}})
        )
        assert insert_failure_record(make_run(), make_store(store_token, session)) is InsertOutcome.DUPLICATE

    def test_precondition_without_duplicate_code_fails(self, store_token):
        session = FakeSession(post=lambda url, kw: FakeResponse(412, {"error": {"code": "0x0", "message": "x"}}))
        assert insert_failure_record(make_run(), make_store(store_token, session)) is InsertOutcome.FAILED

    def test_precondition_with_null_code_fails(self, store_token):
        session = FakeSession(post=lambda url, kw: FakeResponse(412, {"error": {"code": None, "message": "x"}}))
        assert insert_failure_record(make_run(), make_store(store_token, session)) is InsertOutcome.FAILED

    def test_server_error_fails_without_raising(self, store_token, capsys):
        session = FakeSession(post=lambda url, kw: FakeResponse(400, {"error": {"message": "bad column"}}))
        outcome = insert_failure_record(make_run(), make_store(store_token, session))
        assert outcome is InsertOutcome.FAILED
        assert "bad column" in capsys.readouterr().err
        assert len(session.calls) == 1

    def test_transport_error_fails(self, store_token):
        def post(url, kw):
            raise requests.ConnectionError("reset")

        assert insert_failure_record(make_run(), make_store(store_token, FakeSession(post=post))) \
            is InsertOutcome.FAILED
