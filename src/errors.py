"""Exceptions raised by the Backpack connection layer."""

from __future__ import annotations

import json
from typing import Any, List, Optional


class BackpackError(Exception):
    """Base class for every error raised by this package."""


class SignatureError(BackpackError):
    """The API secret could not be turned into an Ed25519 signing key."""


class HttpStatusError(BackpackError):
    def __init__(self, status: int, url: str, body: str = ""):
        super().__init__(f"HTTP {status} url={url} body={body}")
        self.status = status
        self.url = url
        self.body = body


class ExchangeRejected(BackpackError):
    """The exchange answered with a structured ``error`` array."""

    def __init__(self, messages: List[str], url: str, body: Any = None):
        self.messages = list(messages)
        self.url = url
        self.body = body
        super().__init__(
            f"url={url} body={json.dumps(body, default=str)} err={', '.join(self.messages)}"
        )


class UnknownExchangeError(ExchangeRejected):
    """An ``error`` array was returned but no entry carried the error-code marker."""

    def __init__(self, url: str, body: Any = None):
        super().__init__(["Unknown error"], url, body)


class RequestFailed(BackpackError):
    """A REST call failed after exhausting its retries."""

    def __init__(self, instruction: str, cause: BaseException, body: Optional[str] = None):
        self.instruction = instruction
        self.cause = cause
        self.body = body
        super().__init__(f"API {instruction} return {cause!r}:{body or ''}")


class StreamDisconnected(BackpackError):
    """The order update socket went away; only used inside ``order_stream``."""
