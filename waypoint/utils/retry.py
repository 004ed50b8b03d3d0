from __future__ import annotations


def compute_delay(attempt: int, base_delay: float, backoff: float = 1.0) -> float:
    """Delay before retry number ``attempt`` (1-based).

    ``backoff`` of 1.0 gives a fixed delay, larger values grow it
    geometrically.
    """
    return base_delay * (backoff ** max(attempt - 1, 0))
