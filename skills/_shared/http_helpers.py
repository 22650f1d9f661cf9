"""HTTP plumbing shared by the Flow, BAP and Dataverse callers.

One request in flight at a time, plain ``requests`` calls. Paginated
collections follow the ``value`` / ``nextLink`` envelope used by the Flow
and BAP admin APIs (``@odata.nextLink`` on Dataverse).
"""

import json
import sys
from typing import Any, Dict, Iterator, Optional

import requests

from _shared.errors import FetchError

REQUEST_TIMEOUT = 30


def response_error(resp) -> str:
    """Best-effort extraction of the upstream error message from a response body."""
    body = resp.text or ""
    try:
        err = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body
    if isinstance(err, dict):
        inner = err.get("error")
        if isinstance(inner, dict) and inner.get("message"):
            code = inner.get("code")
            return f"{code}: {inner['message']}" if code else inner["message"]
        if isinstance(inner, str):
            return err.get("error_description") or inner
    return body


def get_json(session: requests.Session, url: str, headers: Dict[str, str]) -> Dict[str, Any]:
    """Authenticated GET returning the parsed JSON object. Raises FetchError."""
    try:
        resp = session.get(url, headers=headers, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as e:
        raise FetchError(url, detail=str(e)) from e
    if not resp.ok:
        raise FetchError(url, resp.status_code, detail=response_error(resp))
    try:
        data = resp.json()
    except ValueError as e:
        raise FetchError(url, resp.status_code, detail="response body is not JSON") from e
    if not isinstance(data, dict):
        raise FetchError(url, resp.status_code, detail="expected a JSON object envelope")
    return data


def next_link(envelope: Dict[str, Any]) -> Optional[str]:
    return envelope.get("nextLink") or envelope.get("@odata.nextLink")


class PageIterator:
    """Lazy, single-use iterator over every item of a paginated collection.

    Items are yielded in page order, order within a page preserved, duplicates
    from the server passed through. If a page request fails the error is
    printed, stored on ``error``, and iteration ends; items already yielded
    stand as a partial result. Iterating a second time yields nothing.
    """

    def __init__(self, url: str, headers: Dict[str, str], session: Optional[requests.Session] = None,
                 label: Optional[str] = None):
        self.url = url
        self.headers = dict(headers)
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.label = label or "collection"
        self.error: Optional[FetchError] = None
        self.pages_fetched = 0
        self._started = False
        self._exhausted = False

    @property
    def complete(self) -> bool:
        """True once every page was fetched without error."""
        return self._exhausted and self.error is None

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        if self._started:
            return iter(())
        self._started = True
        return self._walk()

    def _walk(self) -> Iterator[Dict[str, Any]]:
        try:
            yield from self._pages()
        finally:
            if self._owns_session:
                self.session.close()

    def _pages(self) -> Iterator[Dict[str, Any]]:
        url: Optional[str] = self.url
        while url:
            try:
                envelope = get_json(self.session, url, self.headers)
            except FetchError as e:
                self.error = e
                print(
                    f"  ✗ Fetching {self.label} stopped after {self.pages_fetched} page(s): {e}",
                    file=sys.stderr,
                )
                break
            self.pages_fetched += 1
            yield from envelope.get("value") or []
            url = next_link(envelope)
        self._exhausted = True


def fetch_all_pages(url: str, headers: Dict[str, str], session: Optional[requests.Session] = None,
                    label: Optional[str] = None) -> PageIterator:
    """Return a lazy iterator over all items reachable from ``url``."""
    return PageIterator(url, headers, session=session, label=label)
