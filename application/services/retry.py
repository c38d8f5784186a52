# application/services/retry.py
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from domain.errors import TransientFetchError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Reintenta solo TransientFetchError, con espera exponencial
    (backoff * 2**(n-1)) o el Retry-After del servidor si es mayor.
    Tras el último intento se relanza el error tal cual.
    """
    attempts: int = 3
    backoff: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def _wait(self, state: RetryCallState) -> float:
        wait = wait_exponential(multiplier=self.backoff, exp_base=2)(state)
        error = state.outcome.exception() if state.outcome else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            wait = max(wait, retry_after)
        return wait

    def _retrying(self, what: str) -> Retrying:
        def _log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            wait = state.next_action.sleep if state.next_action else 0.0
            logger.warning("%s: intento %d/%d fallido (%s); reintento en %.1f s",
                           what, state.attempt_number, self.attempts, error, wait)

        return Retrying(
            retry=retry_if_exception_type(TransientFetchError),
            stop=stop_after_attempt(max(1, self.attempts)),
            wait=self._wait,
            sleep=self.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

    def call(self, fn: Callable[[], T], what: str = "petición") -> T:
        try:
            return self._retrying(what)(fn)
        except TransientFetchError as e:
            logger.error("%s: fallo tras %d intentos: %s", what, max(1, self.attempts), e)
            raise


NO_RETRY = RetryPolicy(attempts=1)
