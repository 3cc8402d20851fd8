# backpack_client.py
"""Minimal asynchronous REST client for the Backpack exchange.

Only the instructions the grid bot needs are wired up.  Every call goes
through :meth:`ExchangeClient.call`, which signs private instructions, retries
failures with jittered backoff and normalises the exchange error envelope.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import aiohttp

from backoff_utils import DEFAULT_REQUEST_TIMEOUT, call_with_retries
from errors import (
    ExchangeRejected,
    HttpStatusError,
    RequestFailed,
    UnknownExchangeError,
)
from signer import Signer, render_value
from utils import logger as app_logger

API_ENDPOINT = "https://api.backpack.exchange"
USER_AGENT = "Backpack Client"
DEFAULT_BACKOFF_SEC = 5.0

# Prefix carried by meaningful entries of an ``error`` array.
ERROR_MARKER = "E"

PUBLIC_INSTRUCTIONS: Dict[str, Tuple[str, str]] = {
    "assets": ("GET", "/api/v1/assets"),
    "markets": ("GET", "/api/v1/markets"),
    "ticker": ("GET", "/api/v1/ticker"),
    "depth": ("GET", "/api/v1/depth"),
    "klines": ("GET", "/api/v1/klines"),
    "status": ("GET", "/api/v1/status"),
    "ping": ("GET", "/api/v1/ping"),
    "time": ("GET", "/api/v1/time"),
    "trades": ("GET", "/api/v1/trades"),
}

PRIVATE_INSTRUCTIONS: Dict[str, Tuple[str, str]] = {
    "balanceQuery": ("GET", "/api/v1/capital"),
    "depositAddressQuery": ("GET", "/wapi/v1/capital/deposit/address"),
    "depositQueryAll": ("GET", "/wapi/v1/capital/deposits"),
    "orderHistoryQueryAll": ("GET", "/wapi/v1/history/orders"),
    "fillHistoryQueryAll": ("GET", "/wapi/v1/history/fills"),
    "orderQuery": ("GET", "/api/v1/order"),
    "orderExecute": ("POST", "/api/v1/order"),
    "orderCancel": ("DELETE", "/api/v1/order"),
    "orderQueryAll": ("GET", "/api/v1/orders"),
    "orderCancelAll": ("DELETE", "/api/v1/orders"),
    "withdraw": ("POST", "/wapi/v1/capital/withdrawals"),
    "withdrawalQueryAll": ("GET", "/wapi/v1/capital/withdrawals"),
}


@dataclass
class ResponseEnvelope:
    """Response whose content type is neither JSON nor plain text."""

    status: int
    headers: Dict[str, str]
    body: str


def parse_response(
    content_type: str,
    status: int,
    headers: Mapping[str, str],
    body: str,
    url: str,
    params: Any = None,
) -> Any:
    """Turn a successful HTTP response into the value returned by ``call``."""

    content_type = (content_type or "").lower()
    if "application/json" in content_type:
        if not body:
            return None
        parsed = json.loads(body)
        errors = parsed.get("error") if isinstance(parsed, dict) else None
        if errors:
            messages = [
                str(e)[len(ERROR_MARKER):]
                for e in errors
                if str(e).startswith(ERROR_MARKER)
            ]
            if not messages:
                raise UnknownExchangeError(url, params)
            raise ExchangeRejected(messages, url, params)
        return parsed
    if "text/plain" in content_type:
        return body
    return ResponseEnvelope(status=status, headers=dict(headers), body=body)


def is_not_found(exc: BaseException) -> bool:
    return getattr(exc, "status", None) == 404


class ExchangeClient:
    """Signed REST access to Backpack.

    Public instructions go out without authentication headers.  Private
    instructions carry ``X-Timestamp``, ``X-Window``, ``X-API-Key`` and
    ``X-Signature``, recomputed on every attempt so a retry never reuses an
    expired signature.
    """

    def __init__(
        self,
        api_key: str,
        signer: Signer,
        *,
        endpoint: str = API_ENDPOINT,
        backoff_sec: float = DEFAULT_BACKOFF_SEC,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ):
        self.api_key = api_key
        self.signer = signer
        self.endpoint = endpoint.rstrip("/")
        self.backoff_sec = backoff_sec
        self.request_timeout = request_timeout
        self.logger = logger or app_logger.getChild("rest")
        self._session: Optional[aiohttp.ClientSession] = None

    # ------------------------------------------------------------------
    def resolve(self, instruction: str) -> Tuple[str, str, bool]:
        """Return ``(method, url, is_private)`` for ``instruction``."""
        if instruction in PRIVATE_INSTRUCTIONS:
            method, path = PRIVATE_INSTRUCTIONS[instruction]
            return method, self.endpoint + path, True
        if instruction in PUBLIC_INSTRUCTIONS:
            method, path = PUBLIC_INSTRUCTIONS[instruction]
            return method, self.endpoint + path, False
        raise ValueError(f"Unknown Backpack instruction: {instruction}")

    @staticmethod
    def _timestamp() -> int:
        return int(time.time() * 1000)

    def auth_headers(self, instruction: str, params: Mapping[str, Any]) -> Dict[str, str]:
        timestamp = self._timestamp()
        window = self.signer.window_ms
        return {
            "X-Timestamp": str(timestamp),
            "X-Window": str(window),
            "X-API-Key": self.api_key,
            "X-Signature": self.signer.sign(instruction, params, timestamp, window),
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _raw_request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        params: Dict[str, Any],
    ) -> Any:
        headers = {
            "User-Agent": USER_AGENT,
            "Content-Type": "application/json; charset=utf-8",
            **headers,
        }
        if method == "GET":
            kwargs: Dict[str, Any] = {"params": {k: render_value(v) for k, v in params.items()}}
        else:
            kwargs = {"data": json.dumps(params, default=str)}

        session = await self._get_session()
        async with session.request(method, url, headers=headers, **kwargs) as resp:
            body = await resp.text()
            if resp.status >= 400:
                raise HttpStatusError(resp.status, url, body)
            return parse_response(
                resp.headers.get("Content-Type", ""),
                resp.status,
                resp.headers,
                body,
                url,
                params,
            )

    # ------------------------------------------------------------------
    async def call(
        self,
        instruction: str,
        params: Optional[Mapping[str, Any]] = None,
        max_retries: int = 3,
    ) -> Any:
        """Issue ``instruction`` and return its parsed result.

        ``orderQuery`` answering 404 yields ``None`` without retrying; any
        other failure is retried ``max_retries`` times before
        :class:`RequestFailed` is raised.
        """

        method, url, private = self.resolve(instruction)
        payload = dict(params or {})

        async def _attempt():
            headers = self.auth_headers(instruction, payload) if private else {}
            return await self._raw_request(method, url, headers, payload)

        def _give_up(exc: BaseException) -> bool:
            return instruction == "orderQuery" and is_not_found(exc)

        try:
            return await call_with_retries(
                _attempt,
                max_retries=max_retries,
                base_delay=self.backoff_sec,
                give_up=_give_up,
                timeout=self.request_timeout,
            )
        except Exception as e:
            if _give_up(e):
                return None
            # Only an HTTP failure carries a response body worth reporting.
            body = e.body if isinstance(e, HttpStatusError) else None
            self.logger.error(
                "request failed | instruction=%s attempts=%d error=%s",
                instruction,
                max_retries + 1,
                e,
            )
            raise RequestFailed(instruction, e, body) from e
