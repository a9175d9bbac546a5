import random


class ExponentialBackoff:
    """
    Reconnect delays for one peer: exponential growth from base, capped, with full jitter.

    Attempt n waits a uniform random time in [0, min(cap, base * 2 ** n)]. reset() is called after a successful
    handshake so a peer that drops after a long healthy session starts again from base.
    """

    def __init__(self, base: float = 5.0, cap: float = 300.0, rng: random.Random = None):
        self.base = base
        self.cap = cap
        self.attempts = 0
        self._rng = rng or random.Random()

    def ceiling(self) -> float:
        if self.base <= 0:
            return 0.0
        exponent = min(self.attempts, 32)
        return min(self.cap, self.base * (2 ** exponent))

    def next_delay(self) -> float:
        delay = self._rng.uniform(0, self.ceiling())
        self.attempts += 1
        return delay

    def reset(self):
        self.attempts = 0
