"""Back/forward navigation history, written through to a key/value store."""

import json

from loguru import logger

from permaroam.config import HISTORY_KEY
from permaroam.models import HistoryState, TransactionMeta
from permaroam.protocols import KeyValueStoreProtocol

# Oldest entries are dropped beyond this.
MAX_HISTORY_ITEMS = 1000


class NavigationHistory:
    """Browser-style history of served transactions.

    ``add`` after going back discards the forward branch. Every mutation is
    persisted; the stored value is loaded lazily on first access.
    """

    def __init__(self, store: KeyValueStoreProtocol, *, key: str = HISTORY_KEY) -> None:
        self._store = store
        self._key = key
        self._state: HistoryState | None = None

    @property
    def state(self) -> HistoryState:
        if self._state is None:
            self._state = self._load()
        return self._state

    def _load(self) -> HistoryState:
        raw = self._store.get(self._key)
        if raw is None:
            return HistoryState()
        try:
            state = HistoryState.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.opt(exception=True).warning("Stored history {!r} is unreadable, starting empty", self._key)
            state = HistoryState()
            self._save(state)
            return state
        logger.debug("Loaded history: {} items, index {}", len(state.items), state.index)
        return state

    def _save(self, state: HistoryState) -> None:
        self._state = state
        self._store.set(self._key, json.dumps(state.to_dict(), separators=(",", ":")))

    def add(self, tx: TransactionMeta) -> None:
        state = self.state
        items = (*state.items[: state.index + 1], tx)
        if len(items) > MAX_HISTORY_ITEMS:
            items = items[-MAX_HISTORY_ITEMS:]
        self._save(HistoryState(items=items, index=len(items) - 1))

    def go_back(self) -> TransactionMeta | None:
        """Step back; None (and no change) at the oldest entry."""
        state = self.state
        if state.index <= 0:
            return None
        new_state = HistoryState(items=state.items, index=state.index - 1)
        self._save(new_state)
        return new_state.current

    def go_forward(self) -> TransactionMeta | None:
        """Step forward; None (and no change) at the newest entry."""
        state = self.state
        if state.index >= len(state.items) - 1:
            return None
        new_state = HistoryState(items=state.items, index=state.index + 1)
        self._save(new_state)
        return new_state.current

    def peek_forward(self) -> TransactionMeta | None:
        state = self.state
        if state.index >= len(state.items) - 1:
            return None
        return state.items[state.index + 1]

    def current(self) -> TransactionMeta | None:
        return self.state.current

    def reset(self) -> None:
        self._save(HistoryState())
        logger.debug("History cleared")

    def __len__(self) -> int:
        return len(self.state.items)
