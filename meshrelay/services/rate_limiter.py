"""
Per-address frame budgets for the relay.

Frames are split into two classes. Negotiation frames (offer, answer and
ice-candidate) arrive in bursts whenever a mesh renegotiates, one trickled
candidate at a time, so they get a large budget. Everything else (joins,
admission decisions, status broadcasts, pings and unparseable frames) is
control traffic that a well-behaved tab sends a handful of times per window.

Overflowing either budget bans the whole address for a while, and the socket
that overflowed is closed.

Usage:
    limiter = RateLimiter()
    if not limiter.allow(ip, data.get("msg_type")):
        # close the socket
    limiter.forget(ip)  # on disconnect, unless banned
"""
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

WINDOW_SECONDS: float = 5.0
BAN_SECONDS: float = 30.0

NEGOTIATION = "negotiation"
CONTROL = "control"

NEGOTIATION_TYPES = frozenset({"offer", "answer", "ice-candidate"})

# A full mesh of eight renegotiating at once trickles a few dozen candidates
# per peer; control traffic is bounded by the 300 ms speaking hysteresis.
DEFAULT_BUDGETS: Dict[str, int] = {
    NEGOTIATION: 200,
    CONTROL: 40,
}


def message_class(msg_type: Optional[str]) -> str:
    """Budget class a msg_type is counted against."""
    return NEGOTIATION if msg_type in NEGOTIATION_TYPES else CONTROL


class RateLimiter:
    """
    Sliding window per (address, class) with a per-address temporary ban.
    """

    def __init__(
            self,
            window_seconds: float = WINDOW_SECONDS,
            budgets: Optional[Dict[str, int]] = None,
            ban_seconds: float = BAN_SECONDS,
            clock: Callable[[], float] = time.monotonic) -> None:
        """
        Args:
            window_seconds (float): Length of the sliding window.
            budgets (dict, optional): Frames allowed per window, by class.
                Classes left out keep their default budget.
            ban_seconds (float): How long an address stays refused after overflowing.
            clock (callable): Monotonic time source, injectable for tests.
        """
        self.window_seconds = window_seconds
        self.budgets = {**DEFAULT_BUDGETS, **(budgets or {})}
        self.ban_seconds = ban_seconds
        self._clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}
        self._banned_until: Dict[str, float] = {}

    def allow(self, key: str, msg_type: Optional[str] = None) -> bool:
        """
        Count one frame from `key` and decide whether it may be processed.

        Args:
            key (str): Remote address of the sender.
            msg_type (str, optional): Type of the frame; None for unparseable input.

        Returns:
            bool: False if the address is banned or has just overflowed a budget.
        """
        now = self._clock()
        if self.is_banned(key):
            return False
        self._banned_until.pop(key, None)

        kind = message_class(msg_type)
        hits = self._hits.setdefault((key, kind), deque())
        hits.append(now)
        while now - hits[0] > self.window_seconds:
            hits.popleft()

        if len(hits) > self.budgets[kind]:
            self._banned_until[key] = now + self.ban_seconds
            self.forget(key)
            return False
        return True

    def is_banned(self, key: str) -> bool:
        return self._banned_until.get(key, float("-inf")) > self._clock()

    def forget(self, key: str) -> None:
        """Drop the windows for `key`; a ban is kept until it expires."""
        for kind in self.budgets:
            self._hits.pop((key, kind), None)
