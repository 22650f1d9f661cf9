"""Shared fixtures: fake HTTP session, tokens, script loader. No network."""

import importlib.util
import json
import sys
from pathlib import Path

import pytest

SKILLS_DIR = Path(__file__).resolve().parents[1] / "skills"
if str(SKILLS_DIR) not in sys.path:
    sys.path.insert(0, str(SKILLS_DIR))

from _shared.auth_helpers import Token  # noqa: E402


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        if text is not None:
            self.text = text
        elif body is not None:
            self.text = json.dumps(body)
        else:
            self.text = ""

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._body is None:
            return json.loads(self.text)
        return self._body


class FakeSession:
    """Records every request and answers from a routing function.

    ``get`` and ``post`` are callables taking (url, kwargs) and returning a
    FakeResponse, or raising (e.g. requests.ConnectionError).
    """

    def __init__(self, get=None, post=None):
        self._get = get
        self._post = post
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        if self._get is None:
            raise AssertionError(f"unexpected GET {url}")
        return self._get(url, kwargs)

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        if self._post is None:
            raise AssertionError(f"unexpected POST {url}")
        return self._post(url, kwargs)

    def urls(self, method):
        return [url for m, url, _ in self.calls if m == method]


def load_script(skill: str, name: str):
    """Import a skill script (they live in hyphenated dirs, not packages)."""
    path = SKILLS_DIR / skill / "scripts" / f"{name}.py"
    spec = importlib.util.spec_from_file_location(name, path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def flow_token():
    return Token(value="flow-token", audience="https://service.flow.microsoft.com")


@pytest.fixture
def store_token():
    return Token(value="store-token", audience="https://org.crm.dynamics.com")
