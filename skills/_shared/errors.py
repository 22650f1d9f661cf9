"""Error kinds shared by the ppadmin-kit skills.

Each error carries a ``fatal`` flag. Fatal errors stop the whole script;
recoverable ones are caught at the smallest enclosing scope (one flow, one
environment, one record), printed, and counted in the run summary.
"""

from typing import Optional


class KitError(RuntimeError):
    """Base class for all ppadmin-kit errors."""

    fatal = False

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail

    def __str__(self) -> str:
        message = super().__str__()
        if self.detail:
            return f"{message}: {self.detail}"
        return message


class ConfigError(KitError):
    """Configuration is missing or invalid. Raised before any network call."""

    fatal = True

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__("Invalid configuration", detail="; ".join(self.problems))


class AuthError(KitError):
    """Token exchange failed. No further API calls are possible."""

    fatal = True

    def __init__(self, audience: str, detail: Optional[str] = None):
        self.audience = audience
        super().__init__(f"Token acquisition failed for {audience}", detail=detail)


class FetchError(KitError):
    """A GET against a remote collection failed; the page sequence is truncated."""

    def __init__(self, url: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        self.url = url
        self.status_code = status_code
        prefix = f"HTTP {status_code}" if status_code else "Request failed"
        super().__init__(f"{prefix} for {url}", detail=detail)


class DedupCheckError(KitError):
    """The store existence query failed."""

    def __init__(self, run_id: str, detail: Optional[str] = None):
        self.run_id = run_id
        super().__init__(f"Existence check failed for run {run_id}", detail=detail)


class InsertError(KitError):
    """Creating a failure record failed. That one record is dropped."""

    def __init__(self, run_id: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        self.run_id = run_id
        self.status_code = status_code
        super().__init__(f"Insert failed for run {run_id}", detail=detail)


class CommandError(KitError):
    """An external CLI invocation (pac) failed."""

    def __init__(self, command, returncode: Optional[int] = None, detail: Optional[str] = None):
        self.command = list(command)
        self.returncode = returncode
        label = " ".join(self.command[:3])
        suffix = f" (exit {returncode})" if returncode is not None else ""
        super().__init__(f"Command '{label}' failed{suffix}", detail=detail)


class TriggerError(KitError):
    """An HTTP-triggered flow rejected the request."""

    def __init__(self, url: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        self.url = url
        self.status_code = status_code
        suffix = f" (HTTP {status_code})" if status_code else ""
        super().__init__(f"Flow trigger failed{suffix}", detail=detail)
