"""
Utility functions for the flash loan arbitrage bot.
"""
import asyncio
import logging
import sys
from typing import Awaitable, Callable, Dict, Hashable, Iterable, List, Sequence, Tuple, Type, TypeVar

from .constants import IX_RETRY_SLEEP_SECONDS, MAX_IX_RETRIES
from .errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")
H = TypeVar("H", bound=Hashable)


def get_terminal_colors() -> Dict[str, str]:
    """
    Get ANSI color codes for terminal output.

    Returns empty strings if output is not a TTY (e.g., redirected to file).
    This ensures log files remain clean without ANSI escape codes.

    Returns:
        Dictionary with color codes: GREEN, CYAN, YELLOW, RED, DIM, RESET
    """
    use_color = sys.stdout.isatty()
    return {
        'GREEN': '\033[92m' if use_color else '',   # Counts, sizes, slots
        'CYAN': '\033[96m' if use_color else '',    # Addresses, cache names, signatures
        'YELLOW': '\033[93m' if use_color else '',  # Amounts and profit signals
        'RED': '\033[91m' if use_color else '',     # Failures
        'DIM': '\033[90m' if use_color else '',     # Secondary messages
        'RESET': '\033[0m' if use_color else ''
    }


def chunk_list(items: Sequence[T], chunk_size: int) -> List[List[T]]:
    """
    Break a sequence into consecutive chunks of at most chunk_size items.

    Args:
        items: Items to split
        chunk_size: Maximum chunk length (must be positive)

    Returns:
        List of chunks; empty list for empty input
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [list(items[i:i + chunk_size]) for i in range(0, len(items), chunk_size)]


def dedupe_preserving_order(items: Iterable[H]) -> List[H]:
    """Remove duplicates, keeping the first occurrence of each item."""
    seen = set()
    return [item for item in items if not (item in seen or seen.add(item))]


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    ceiling: int = MAX_IX_RETRIES,
    interval: float = IX_RETRY_SLEEP_SECONDS,
    label: str = "operation",
    fatal: Tuple[Type[BaseException], ...] = ()
) -> T:
    """
    Run an async operation until it succeeds or the retry ceiling is reached.

    The sleep between attempts is fixed (no backoff growth).

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        ceiling: Maximum number of attempts
        interval: Seconds to sleep between attempts
        label: Name used in logs and in the final error
        fatal: Exception types re-raised at once instead of retried

    Returns:
        Result of the first successful attempt

    Raises:
        RetryExhaustedError: If every attempt raised
    """
    last_error = None
    for attempt in range(1, ceiling + 1):
        try:
            return await operation()
        except fatal:
            raise
        except Exception as e:
            last_error = e
            logger.warning(f"{label} attempt {attempt}/{ceiling} failed: {e}")
            if attempt < ceiling:
                await asyncio.sleep(interval)
    raise RetryExhaustedError(label, ceiling, last_error)


def to_base_units(amount: float, decimals: int) -> int:
    """Convert a UI amount (e.g. 0.1 SOL) to integer base units."""
    if amount < 0:
        raise ValueError(f"amount must not be negative, got {amount}")
    return int(round(amount * 10 ** decimals))
