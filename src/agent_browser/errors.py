"""Exception hierarchy shared across the daemon, backends and stream server."""

from __future__ import annotations

import re


class AgentBrowserError(RuntimeError):
    """Base class for errors raised by agent-browser."""


class ProtocolError(AgentBrowserError):
    """Raised when a command line cannot be parsed or validated."""


class BrowserActionError(AgentBrowserError):
    """Raised when executing a browser action fails."""


class BrowserNotLaunchedError(BrowserActionError):
    """Raised when an action needs a browser that has not been launched."""

    def __init__(self, message: str = "Browser not launched. Call launch first.") -> None:
        super().__init__(message)


class LaunchError(AgentBrowserError):
    """Raised when launching or reconnecting the browser fails."""


class UnsupportedActionError(AgentBrowserError):
    """Raised by a backend for an action outside its capability set."""

    def __init__(self, backend: str, action: str) -> None:
        self.backend = backend
        self.action = action
        super().__init__(f'Action "{action}" not supported in {backend} mode')


class BridgeError(AgentBrowserError):
    """Raised when the remote automation bridge reports a failure."""


class BridgeTimeoutError(BridgeError):
    """Raised when the remote automation bridge does not answer in time."""


_INTERCEPT_PATTERN = re.compile(r"intercepts pointer events")
_STRICT_PATTERN = re.compile(r"strict mode violation.*resolved to (\d+) elements", re.DOTALL)
_TIMEOUT_PATTERN = re.compile(r"Timeout \d+ms exceeded")


def to_friendly_error(exc: BaseException, selector: str) -> BrowserActionError:
    """Translate a raw driver error into a message an operator can act on.

    Overlay interception is checked before timeouts: Playwright reports a
    blocked click as a timeout whose call log mentions the interception.
    """

    message = str(exc)
    if _INTERCEPT_PATTERN.search(message):
        return BrowserActionError(
            f'Element "{selector}" is blocked by another element (likely a modal or overlay). '
            "Try dismissing any modals/cookie banners first."
        )
    strict = _STRICT_PATTERN.search(message)
    if strict:
        return BrowserActionError(
            f'Selector "{selector}" matched {strict.group(1)} elements. '
            "Run 'snapshot' to get updated refs, or use a more specific selector."
        )
    if _TIMEOUT_PATTERN.search(message) and "waiting for" in message:
        return BrowserActionError(
            f'Element "{selector}" not found or not visible. '
            "Run 'snapshot' to see current page elements."
        )
    return BrowserActionError(message)
