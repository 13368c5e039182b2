"""
RETRY
=====
Exponential backoff with jitter for flaky collaborator calls.
A CircuitBreakerError is never retried: the breaker already decided.
"""

import time
import random
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type
from functools import wraps

from circuit_breaker import CircuitBreaker, CircuitBreakerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter_range: float = 0.1   # ± fraction of the delay


def calculate_backoff(attempt: int, config: RetryConfig,
                      rng: Callable[[float, float], float] = random.uniform) -> float:
    """Delay in seconds before retry number `attempt` (0-indexed)."""
    delay = min(config.initial_delay * (config.exponential_base ** attempt), config.max_delay)
    if config.jitter_range > 0:
        spread = delay * config.jitter_range
        delay += rng(-spread, spread)
    return max(0.0, delay)


def retry(
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    config: Optional[RetryConfig] = None,
    circuit_breaker: Optional[CircuitBreaker] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator: retry `func` on `exceptions`, optionally through a breaker.

    Args:
        exceptions: exception types worth retrying
        config: attempts / delays
        circuit_breaker: every attempt goes through it when given
        sleep: injectable for tests
    """
    cfg = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            for attempt in range(cfg.max_attempts):
                try:
                    if circuit_breaker is not None:
                        return circuit_breaker.call(func, *args, **kwargs)
                    return func(*args, **kwargs)
                except CircuitBreakerError:
                    raise
                except exceptions as e:
                    if attempt == cfg.max_attempts - 1:
                        logger.error(
                            f"All {cfg.max_attempts} attempts exhausted for "
                            f"{func.__name__}: {e.__class__.__name__}: {e}"
                        )
                        raise
                    delay = calculate_backoff(attempt, cfg)
                    logger.warning(
                        f"Retry {attempt + 1}/{cfg.max_attempts} for {func.__name__}: "
                        f"{e.__class__.__name__}: {e} (waiting {delay:.2f}s)"
                    )
                    sleep(delay)
        return wrapper
    return decorator
