from __future__ import annotations

import random
import threading
from typing import List, Optional

# Ordered by ASCII value so generated keys sort by creation time
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class PushIdGenerator:
    """20-character chronologically sortable keys.

    Eight characters encode the millisecond timestamp, twelve are random.
    Keys generated within the same millisecond increment the random part so
    they still sort in generation order.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()
        self._last_ts = -1
        self._last_rand: List[int] = [0] * 12
        self._lock = threading.Lock()

    def generate(self, now_ms: int) -> str:
        with self._lock:
            duplicate = now_ms <= self._last_ts
            if not duplicate:
                self._last_ts = now_ms
                self._last_rand = [self._rng.randrange(64) for _ in range(12)]
            else:
                i = 11
                while i >= 0 and self._last_rand[i] == 63:
                    self._last_rand[i] = 0
                    i -= 1
                if i >= 0:
                    self._last_rand[i] += 1

            ts = self._last_ts
            ts_chars = []
            for _ in range(8):
                ts_chars.append(PUSH_CHARS[ts % 64])
                ts //= 64
            return "".join(reversed(ts_chars)) + "".join(PUSH_CHARS[r] for r in self._last_rand)
