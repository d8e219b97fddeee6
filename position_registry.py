#!/usr/bin/env python3
"""
POSITION REGISTRY — In-memory table of active positions.

Owned by the TradeEngine and handed to each PositionMonitor. Positions are
keyed by a monotonically assigned integer id and indexed by
(wallet, token mint); a wallet can hold at most one active position per
token.

Status transitions are check-and-set operations with no await inside, so
within one event loop a transition is atomic: whichever of the polling
tick or a manual sell/cancel calls transition() first wins, and the loser
sees the new status and backs off.

    starting -> running -> closing -> finished
                        -> canceled / error
"""

import itertools

from log_setup import get_logger

logger = get_logger(__name__)

__all__ = ["PositionRegistry", "DuplicatePosition", "ACTIVE_STATES", "TERMINAL_STATES"]

ACTIVE_STATES = ("starting", "running", "closing")
TERMINAL_STATES = ("finished", "canceled", "error")


class DuplicatePosition(Exception):
    """The wallet already has an active position on this token."""


class PositionRegistry:
    def __init__(self):
        self._ids = itertools.count(1)
        self._positions: dict[int, object] = {}
        self._by_key: dict[tuple[str, str], int] = {}

    def __len__(self):
        return len(self._positions)

    def __contains__(self, position_id: int) -> bool:
        return position_id in self._positions

    def register(self, position) -> int:
        """Assign an id, index the position and return the id."""
        key = (position.wallet, position.token_mint)
        if key in self._by_key:
            raise DuplicatePosition(
                f"{position.wallet} already has active position T{self._by_key[key]} on {position.token_mint}"
            )
        position_id = next(self._ids)
        position.id = position_id
        position.status = "starting"
        self._positions[position_id] = position
        self._by_key[key] = position_id
        return position_id

    def get(self, position_id: int):
        return self._positions.get(position_id)

    def find(self, wallet: str, token_mint: str):
        position_id = self._by_key.get((wallet, token_mint))
        return self._positions.get(position_id) if position_id is not None else None

    def active(self, wallet: str | None = None) -> list:
        return [p for p in self._positions.values() if wallet is None or p.wallet == wallet]

    def transition(self, position_id: int, expected: tuple[str, ...], new_status: str) -> bool:
        """Set status to new_status only if it is currently one of expected."""
        position = self._positions.get(position_id)
        if position is None or position.status not in expected:
            return False
        logger.debug("T%s: %s -> %s", position_id, position.status, new_status)
        position.status = new_status
        return True

    def finish(self, position_id: int, status: str, expected: tuple[str, ...] = ACTIVE_STATES) -> bool:
        """Mark a terminal status and drop the id in one step. False if already gone."""
        if status not in TERMINAL_STATES:
            raise ValueError(f"{status!r} is not a terminal status")
        position = self._positions.get(position_id)
        if position is None or position.status not in expected:
            return False
        position.status = status
        del self._positions[position_id]
        self._by_key.pop((position.wallet, position.token_mint), None)
        logger.debug("T%s: removed from registry (%s)", position_id, status)
        return True
