import os

from dotenv import load_dotenv

from backoff_utils import DEFAULT_REQUEST_TIMEOUT
from backpack_client import API_ENDPOINT, DEFAULT_BACKOFF_SEC, ExchangeClient
from order_stream import DEFAULT_RECONNECT_SEC, WS_ENDPOINT, OrderEventStream
from signer import DEFAULT_WINDOW_MS, Signer

load_dotenv()


def _require_env_vars() -> tuple[str, str]:
    """Fetch and validate required environment variables."""

    api_key = os.getenv("BACKPACK_API_KEY")
    api_secret = os.getenv("BACKPACK_API_SECRET")

    if not api_key:
        raise RuntimeError("Environment variable 'BACKPACK_API_KEY' is missing or empty")
    if not api_secret:
        raise RuntimeError("Environment variable 'BACKPACK_API_SECRET' is missing or empty")

    return api_key, api_secret


def _env_number(name: str, default, convert=float):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return convert(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable '{name}' is invalid: {raw!r}") from exc


class TradingAccount:
    """One Backpack identity: the signer plus the REST and WebSocket sides.

    The REST client and the order stream share the signer so a single key
    authenticates both.
    """

    def __init__(self):
        api_key, api_secret = _require_env_vars()

        self.api_key = api_key
        self.endpoint = os.getenv("BACKPACK_API_ENDPOINT") or API_ENDPOINT
        self.ws_endpoint = os.getenv("BACKPACK_WS_ENDPOINT") or WS_ENDPOINT
        self.window_ms = _env_number("BACKPACK_X_WINDOW", DEFAULT_WINDOW_MS, int)
        self.backoff_sec = _env_number("BACKPACK_BACKOFF_SEC", DEFAULT_BACKOFF_SEC)
        self.reconnect_sec = _env_number("BACKPACK_WS_RECONNECT_SEC", DEFAULT_RECONNECT_SEC)
        self.request_timeout = _env_number("BACKPACK_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT)

        # Raises SignatureError straight away on a malformed secret.
        self.signer = Signer(api_secret, window_ms=self.window_ms)

        self.client = ExchangeClient(
            self.api_key,
            self.signer,
            endpoint=self.endpoint,
            backoff_sec=self.backoff_sec,
            request_timeout=self.request_timeout,
        )

        self.order_stream = OrderEventStream(
            self.api_key,
            self.signer,
            ws_url=self.ws_endpoint,
            reconnect_delay=self.reconnect_sec,
        )

    def get_client(self) -> ExchangeClient:
        return self.client

    def get_order_stream(self) -> OrderEventStream:
        return self.order_stream

    def get_signer(self) -> Signer:
        return self.signer

    async def close(self) -> None:
        """Stop the order stream and close the HTTP session."""
        await self.order_stream.stop()
        await self.client.close()
