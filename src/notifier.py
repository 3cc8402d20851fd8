"""Periodic Telegram status messages for the running grid.

The notifier only reads from the exchange; a failed notification is logged
and never affects trading.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from utils import logger

TELEGRAM_API = "https://api.telegram.org"


@dataclass(frozen=True)
class GridSnapshot:
    symbol: str
    last_price: str
    bids: int
    asks: int


class TelegramNotifier:
    def __init__(self, token: str, chat_id: str, *, api_url: str = TELEGRAM_API):
        self.token = token
        self.chat_id = chat_id
        self.api_url = api_url.rstrip("/")

    async def notify(self, text: str, parse_mode: Optional[str] = "HTML") -> Dict[str, Any]:
        url = f"{self.api_url}/bot{self.token}/sendMessage"
        payload: Dict[str, Any] = {"chat_id": self.chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload) as resp:
                resp.raise_for_status()
                return await resp.json()


async def fetch_snapshot(client, symbol: str) -> GridSnapshot:
    """Read the last price and count the live bid/ask orders."""
    ticker = await client.call("ticker", {"symbol": symbol})
    orders = await client.call("orderQueryAll", {"symbol": symbol}) or []
    bids = sum(1 for order in orders if order.get("side") == "Bid")
    return GridSnapshot(
        symbol=symbol,
        last_price=str(ticker["lastPrice"]),
        bids=bids,
        asks=len(orders) - bids,
    )


def format_snapshot(snapshot: GridSnapshot) -> str:
    return (
        f"<b>[{snapshot.symbol}] {snapshot.last_price}</b>\n"
        f"Bid: {snapshot.bids} | Ask: {snapshot.asks}"
    )


async def notify_loop(
    client,
    notifier: TelegramNotifier,
    symbol: str,
    interval: float,
    closing: asyncio.Event,
) -> None:
    """Send a snapshot every ``interval`` seconds until ``closing`` is set."""
    while not closing.is_set():
        try:
            await asyncio.wait_for(closing.wait(), timeout=interval)
            return
        except asyncio.TimeoutError:
            pass
        try:
            snapshot = await fetch_snapshot(client, symbol)
            await notifier.notify(format_snapshot(snapshot), parse_mode="HTML")
        except Exception as e:
            logger.error("[%s] Notify user failed: %s", symbol, e)
