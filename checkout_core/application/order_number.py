import logging
import random
import string
import time
from typing import Callable, Optional

from checkout_core.domain.exceptions import GenerationExhausted


logger = logging.getLogger(__name__)

_ALPHABET = string.digits + string.ascii_uppercase


class OrderNumberGenerator:
    """Mints `<prefix><time-suffix><random-suffix>` order numbers.

    Uniqueness is checked against existing orders and retried with a fresh
    random suffix, at most `max_attempts` times.
    """

    def __init__(
        self,
        prefix: str = "ORD",
        max_attempts: int = 10,
        rng: Optional[random.Random] = None,
        clock_ms: Optional[Callable[[], int]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._prefix = prefix
        self._max_attempts = max_attempts
        self._rng = rng or random.SystemRandom()
        self._clock_ms = clock_ms or (lambda: time.time_ns() // 1_000_000)

    def candidate(self) -> str:
        time_suffix = str(self._clock_ms())[-8:]
        random_suffix = "".join(self._rng.choice(_ALPHABET) for _ in range(4))
        return f"{self._prefix}{time_suffix}{random_suffix}"

    async def generate(self, orders) -> str:
        for attempt in range(1, self._max_attempts + 1):
            order_number = self.candidate()
            if not await orders.exists_with_number(order_number):
                return order_number
            logger.warning(f"Order number collision on {order_number} (attempt {attempt})")
        raise GenerationExhausted(self._max_attempts)
