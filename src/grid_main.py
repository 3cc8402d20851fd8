# grid_main.py
"""Static grid trading bot for Backpack spot markets.

The ladder is split into ``count`` slots between the lower and upper bound.
Each slot keeps its price for the lifetime of the process and uses its index
as the exchange ``clientId``, so there is at most one live order per slot.
Slots below the market price start as bids and those at or above it as asks.
When a bid fills, the level above flips to an ask; when an ask fills, the
level below flips to a bid.  The outermost slot on either end is never
replaced, which keeps the grid inside its configured bounds.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, List, Optional, Tuple

from account import TradingAccount
from notifier import TelegramNotifier, notify_loop
from order_events import OrderEventType, OrderSide, OrderUpdateEvent
from utils import logger, setup_logging

DEFAULT_SETTLE_SEC = 3.0

_engine_logger = logger.getChild("grid")


@dataclass
class GridSlot:
    """One ladder position; ``index`` doubles as the exchange client id."""

    index: int
    price: Decimal
    side: OrderSide


@dataclass(frozen=True)
class GridSettings:
    symbol: str
    lower_price: Decimal
    upper_price: Decimal
    price_decimals: int
    grid_count: int
    quantity: Decimal
    settle_sec: float = DEFAULT_SETTLE_SEC
    telegram_token: str = ""
    telegram_chat_id: str = ""
    notify_interval_sec: float = 3600.0


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Environment variable '{name}' is missing or empty")
    return value


def _parse(name: str, convert, raw: str):
    try:
        return convert(raw)
    except (InvalidOperation, ValueError) as exc:
        raise RuntimeError(f"Environment variable '{name}' is invalid: {raw!r}") from exc


def load_grid_settings() -> GridSettings:
    """Read the grid parameters from the environment."""
    return GridSettings(
        symbol=_require("SYMBOL"),
        lower_price=_parse("LOWER_PRICE", Decimal, _require("LOWER_PRICE")),
        upper_price=_parse("UPPER_PRICE", Decimal, _require("UPPER_PRICE")),
        price_decimals=_parse("PRICE_DECIMAL", int, _require("PRICE_DECIMAL")),
        grid_count=_parse("NUMBER_OF_GRIDS", int, _require("NUMBER_OF_GRIDS")),
        quantity=_parse("QUANTITY_PER_GRID", Decimal, _require("QUANTITY_PER_GRID")),
        settle_sec=_parse("GRID_SETTLE_SEC", float, os.getenv("GRID_SETTLE_SEC", "3")),
        telegram_token=os.getenv("TELEGRAM_BOT_API_TOKEN", ""),
        telegram_chat_id=os.getenv("TELEGRAM_TARGET_CHAT_ID", ""),
        notify_interval_sec=_parse(
            "TELEGRAM_NOTIFY_INTERVAL_SEC",
            float,
            os.getenv("TELEGRAM_NOTIFY_INTERVAL_SEC", "3600"),
        ),
    )


def build_slots(lower: Decimal, upper: Decimal, count: int) -> List[GridSlot]:
    """Return ``count`` slots from ``lower`` (inclusive) to ``upper`` (exclusive)."""
    lower = Decimal(lower)
    upper = Decimal(upper)
    if count < 1:
        raise ValueError(f"grid count must be at least 1, got {count}")
    if lower >= upper:
        raise ValueError(f"lower bound {lower} must be below upper bound {upper}")
    step = (upper - lower) / count
    return [GridSlot(i, lower + i * step, OrderSide.BID) for i in range(count)]


class GridEngine:
    """Keep a static price ladder populated as its orders fill.

    The exchange is the source of truth for which orders exist; the engine
    only remembers slot prices and the side each slot was last placed with.
    Fill handling is serialised by ``_lock``.  The neighbour lookup and the
    replacement placement are still two separate exchange calls, so a fill
    whose replacement is not yet visible on the exchange can race with a
    second notification for the same neighbour.
    """

    def __init__(
        self,
        client,
        symbol: str,
        *,
        settle_delay: float = DEFAULT_SETTLE_SEC,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.symbol = symbol
        self.settle_delay = settle_delay
        self.logger = logger or _engine_logger

        self._slots: List[GridSlot] = []
        self._quantity = Decimal(0)
        self._price_decimals = 0
        self._lock = asyncio.Lock()

    @property
    def slots(self) -> Tuple[GridSlot, ...]:
        """Snapshot of the ladder; changing it does not touch the engine."""
        return tuple(replace(slot) for slot in self._slots)

    def format_price(self, price: Decimal) -> str:
        tick = Decimal(1).scaleb(-self._price_decimals)
        return str(price.quantize(tick, rounding=ROUND_HALF_UP))

    # ------------------------------------------------------------------
    async def initialize(
        self,
        lower: Decimal,
        upper: Decimal,
        count: int,
        quantity: Decimal,
        price_decimals: int,
    ) -> None:
        """Cancel stale orders and place the full ladder around the market."""
        slots = build_slots(lower, upper, count)
        self._quantity = Decimal(quantity)
        self._price_decimals = int(price_decimals)

        await self.client.call("orderCancelAll", {"symbol": self.symbol})
        # Let the bulk cancel land before reusing the same client ids.
        await asyncio.sleep(self.settle_delay)

        ticker = await self.client.call("ticker", {"symbol": self.symbol})
        market_price = Decimal(str(ticker["lastPrice"]))
        self.logger.info(
            "grid init | symbol=%s slots=%d lower=%s upper=%s market=%s",
            self.symbol,
            count,
            str(lower),
            str(upper),
            str(market_price),
        )

        async with self._lock:
            self._slots = slots
            tasks = []
            for slot in self._slots:
                side = OrderSide.BID if slot.price < market_price else OrderSide.ASK
                tasks.append(self._place(slot, side))
            results = await asyncio.gather(*tasks, return_exceptions=True)

        failures = [
            (slot, result)
            for slot, result in zip(self._slots, results)
            if isinstance(result, Exception)
        ]
        for slot, exc in failures:
            self.logger.error(
                "initial placement failed | symbol=%s idx=%d price=%s",
                self.symbol,
                slot.index,
                str(slot.price),
                exc_info=exc,
            )
        if failures:
            raise failures[0][1]

    async def _place(self, slot: GridSlot, side: OrderSide) -> Any:
        price = self.format_price(slot.price)
        slot.side = side
        result = await self.client.call(
            "orderExecute",
            {
                "clientId": slot.index,
                "orderType": "Limit",
                "price": price,
                "quantity": str(self._quantity),
                "side": side.value,
                "symbol": self.symbol,
                "timeInForce": "GTC",
            },
        )
        self.logger.info(
            "[%s] %s %s_%s | idx=%d",
            self.symbol,
            side.value,
            str(self._quantity),
            price,
            slot.index,
        )
        return result

    # ------------------------------------------------------------------
    async def on_order_update(self, event: OrderUpdateEvent) -> None:
        if event.kind is OrderEventType.ORDER_FILL:
            await self.on_fill(event)
        else:
            self.logger.debug(
                "order update ignored | symbol=%s kind=%s client_id=%s",
                self.symbol,
                event.kind.value,
                event.client_id,
            )

    async def on_fill(self, event: OrderUpdateEvent) -> None:
        """Place the opposite order one level past the filled slot."""
        index = event.client_id if event.client_id is not None else -1
        if index < 1 or index >= len(self._slots) - 1:
            return
        if event.side is None:
            self.logger.warning(
                "fill without side ignored | symbol=%s idx=%d", self.symbol, index
            )
            return

        neighbor = index + 1 if event.side is OrderSide.BID else index - 1
        async with self._lock:
            try:
                order = await self.client.call(
                    "orderQuery", {"symbol": self.symbol, "clientId": neighbor}
                )
                if order is not None:
                    self.logger.debug(
                        "neighbor already populated | symbol=%s idx=%d neighbor=%d",
                        self.symbol,
                        index,
                        neighbor,
                    )
                    return
                await self._place(self._slots[neighbor], event.side.opposite)
            except Exception as e:
                self.logger.error("[%s] %s", self.symbol, e, exc_info=True)


# ----------------------------------------------------------------------
async def main():
    # Ensure logging is configured so warnings/errors are visible
    setup_logging()
    settings = load_grid_settings()
    account = TradingAccount()
    client = account.get_client()
    stream = account.get_order_stream()
    engine = GridEngine(client, settings.symbol, settle_delay=settings.settle_sec)

    closing = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, closing.set)
        except NotImplementedError:
            # Fallback for platforms without loop signal handlers (e.g. Windows)
            signal.signal(sig, lambda s, f, lp=loop: lp.call_soon_threadsafe(closing.set))

    notify_task: Optional[asyncio.Task] = None
    try:
        await engine.initialize(
            settings.lower_price,
            settings.upper_price,
            settings.grid_count,
            settings.quantity,
            settings.price_decimals,
        )
        await stream.start(engine.on_order_update)
        logger.info("[grid] started on %s", settings.symbol)

        if settings.telegram_token:
            notifier = TelegramNotifier(settings.telegram_token, settings.telegram_chat_id)
            notify_task = asyncio.create_task(
                notify_loop(
                    client,
                    notifier,
                    settings.symbol,
                    settings.notify_interval_sec,
                    closing,
                )
            )

        await closing.wait()
    finally:
        if notify_task:
            notify_task.cancel()
            try:
                await notify_task
            except asyncio.CancelledError:
                pass
        await account.close()
        logger.info("[grid] stopped.")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
