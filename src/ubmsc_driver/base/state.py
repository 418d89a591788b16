"""State tracking with transition history and callbacks."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum, auto
from typing import Any, Generic, TypeVar, cast

S = TypeVar("S", bound=Enum)


class SessionState(Enum):
    """Enum representing BLE link session states."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    CLOSING = auto()
    CLOSED = auto()
    LOST = auto()


class StateManager(Generic[S]):
    """State holder with event callbacks and a bounded transition history."""

    def __init__(self, initial: S, history_limit: int = 100) -> None:
        """Initialize StateManager with an initial state and history."""
        self._state: S = initial
        self._history_limit = history_limit
        self._history: list[tuple[S, float]] = [(initial, time.time())]
        self._callbacks: dict[S, list[Callable[[S], Any]]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> S:
        """Get the current state."""
        return self._state

    @property
    def history(self) -> list[tuple[S, float]]:
        """Get the history of state transitions as (state, timestamp) tuples."""
        return self._history.copy()

    def states(self) -> list[S]:
        """Return the visited states in order."""
        return [state for state, _ in self._history]

    def on_state(self, state: S, callback: Callable[[S], Any]) -> None:
        """
        Register a callback to be called when the given state is entered.

        Args:
            state: The state to listen for.
            callback: Function or coroutine function called with the new state.
        """
        self._callbacks.setdefault(state, []).append(callback)

    def _record(self, new_state: S) -> list[Any]:
        self._state = new_state
        self._history.append((new_state, time.time()))
        del self._history[: -self._history_limit]
        return [cb(new_state) for cb in self._callbacks.get(new_state, [])]

    async def set_state(self, new_state: S) -> None:
        """
        Transition to a new state, record history, and await callbacks.

        Args:
            new_state: The state to transition to.
        """
        if new_state == self._state:
            return
        for result in self._record(new_state):
            if asyncio.iscoroutine(result):
                await cast("Awaitable", result)

    def set_state_nowait(self, new_state: S) -> None:
        """
        Transition from synchronous code such as transport callbacks.

        Coroutine callbacks are scheduled on the running loop.
        """
        if new_state == self._state:
            return
        for result in self._record(new_state):
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def get_state_history(self, limit: int = 20) -> list[tuple[S, float]]:
        """
        Get the most recent state transitions.

        Args:
            limit: Maximum number of history entries to return.

        Returns:
            List of (state, timestamp) tuples.
        """
        return self._history[-limit:]
