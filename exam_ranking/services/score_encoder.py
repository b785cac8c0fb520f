"""
Composite score encoding for performance leaderboards.

System Design Concept:
    A sorted set orders members by one number. Course leaderboards need two
    criteria (higher percentage first, then faster time), so both are packed
    into a single integer:

        score = percentage * TIME_SPAN + (TIME_SPAN - time_taken)

    The time term always stays below TIME_SPAN, so a higher percentage
    dominates any time difference, and within equal percentages a smaller
    time gives a larger remainder. One descending sort does the job.

Limits:
    time_taken must be in [1, TIME_SPAN - 1] seconds (about 11.5 days).
    The largest score, 100_999_999, is far below 2**53, so Redis stores it
    exactly as a double.

Points leaderboards do NOT use this encoding; their score is the raw point
balance.
"""

TIME_SPAN = 1_000_000
MAX_PERCENTAGE = 100
MAX_TIME_TAKEN = TIME_SPAN - 1


def encode(percentage: int, time_taken: int) -> int:
    """
    Pack percentage and time into one sortable score.

    Raises:
        ValueError: If either value is outside the encodable domain

    Example:
        >>> encode(80, 90) > encode(80, 120)
        True
    """
    if not 0 <= percentage <= MAX_PERCENTAGE:
        raise ValueError(f"percentage must be within 0..{MAX_PERCENTAGE}, got {percentage}")
    if not 1 <= time_taken <= MAX_TIME_TAKEN:
        raise ValueError(f"time_taken must be within 1..{MAX_TIME_TAKEN}, got {time_taken}")
    return int(percentage) * TIME_SPAN + (TIME_SPAN - int(time_taken))


def decode(score: int) -> tuple[int, int]:
    """Reverse of encode(): returns (percentage, time_taken)."""
    score = int(score)
    if not 0 < score <= encode(MAX_PERCENTAGE, 1):
        raise ValueError(f"Not an encoded performance score: {score}")
    percentage, remainder = divmod(score, TIME_SPAN)
    if remainder == 0:
        raise ValueError(f"Not an encoded performance score: {score}")
    return percentage, TIME_SPAN - remainder
