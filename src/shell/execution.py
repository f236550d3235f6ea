"""Paper Execution — in-memory execution collaborator for paper mode and tests.

Holds positions keyed by symbol and the disabled-strategy set. Closing a
position realizes its unrealized P&L into cash and, when a database is
attached, records the closed trade against the strategy's active mainnet
version so lifecycle metrics see it.
"""

from __future__ import annotations

from dataclasses import replace

import structlog

from src.shell.contract import ExecutionBase, Position
from src.shell.database import Database
from src.utils.timeutil import now_str

log = structlog.get_logger()


class PaperExecution(ExecutionBase):
    """Simulated execution. No orders leave the process."""

    def __init__(self, starting_cash: float, db: Database | None = None) -> None:
        self._cash = starting_cash
        self._db = db
        self._positions: dict[str, Position] = {}
        self._disabled: set[str] = set()

    @property
    def disabled_strategies(self) -> set[str]:
        return set(self._disabled)

    def is_enabled(self, name: str) -> bool:
        return name not in self._disabled

    def open_position(self, position: Position) -> None:
        if position.strategy in self._disabled:
            raise ValueError(f"Strategy {position.strategy} is disabled")
        self._positions[position.symbol] = position
        log.info("paper.position_opened", symbol=position.symbol, strategy=position.strategy,
                 size=position.size, leverage=position.leverage)

    def mark_price(self, symbol: str, price: float) -> None:
        pos = self._positions.get(symbol)
        if pos is None:
            return
        direction = 1 if pos.side == "long" else -1
        pnl = (price - pos.entry_price) * pos.size * direction
        self._positions[symbol] = replace(pos, mark_price=price, unrealized_pnl=pnl)

    async def close_position(self, symbol: str, reason: str) -> bool:
        pos = self._positions.pop(symbol, None)
        if pos is None:
            log.info("paper.close_skipped", symbol=symbol, reason=reason)
            return False
        self._cash += pos.unrealized_pnl
        log.info("paper.position_closed", symbol=symbol, strategy=pos.strategy,
                 pnl=round(pos.unrealized_pnl, 2), reason=reason)
        if self._db is not None:
            await self._record_trade(pos)
        return True

    async def close_all_positions(self, reason: str) -> int:
        closed = 0
        for symbol in list(self._positions):
            if await self.close_position(symbol, reason):
                closed += 1
        return closed

    def disable_strategy(self, name: str) -> None:
        if name not in self._disabled:
            self._disabled.add(name)
            log.info("paper.strategy_disabled", strategy=name)

    def enable_strategy(self, name: str) -> None:
        if name in self._disabled:
            self._disabled.discard(name)
            log.info("paper.strategy_enabled", strategy=name)

    def get_all_positions(self) -> list[Position]:
        return list(self._positions.values())

    def get_total_margin_used(self) -> float:
        return sum(p.margin_used for p in self._positions.values())

    def get_total_unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self._positions.values())

    async def get_account_value(self) -> float:
        return self._cash + self.get_total_unrealized_pnl()

    async def _record_trade(self, pos: Position) -> None:
        row = await self._db.fetchone(
            """SELECT id FROM strategy_versions
               WHERE strategy_name = ? AND deployment_state = 'mainnet_active'
               ORDER BY promoted_at DESC, id DESC LIMIT 1""",
            (pos.strategy,),
        )
        notional = pos.entry_price * pos.size
        pnl_pct = pos.unrealized_pnl / notional * 100 if notional > 0 else 0.0
        await self._db.execute(
            """INSERT INTO trades (strategy_name, strategy_version_id, environment, symbol, side,
                                   pnl, pnl_pct, closed_at)
               VALUES (?, ?, 'mainnet', ?, ?, ?, ?, ?)""",
            (pos.strategy, row["id"] if row else None, pos.symbol, pos.side,
             pos.unrealized_pnl, pnl_pct, now_str()),
        )
        await self._db.commit()
