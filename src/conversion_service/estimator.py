"""Conversion time estimation.

Pure and deterministic: the same inputs always give the same estimate, which is
shown to users before they commit to a conversion.
"""

import math

from .errors import ValidationError
from .tiers import UserTier, policy_for

BYTES_PER_MB = 1024 * 1024
MIN_SIZE_MB = 0.1
MINIMUM_ESTIMATE_MS = 3000

# ms of processing per MB of input
PROCESSING_RATES: dict[str, dict[str, int]] = {
    "pdf": {"high": 2500, "standard": 1200},
    "docx": {"high": 2000, "standard": 1000},
}

HEAD_QUEUE_POSITIONS = 5
HEAD_POSITION_COST_MS = 15000
TAIL_POSITION_COST_MS = 5000


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _queue_delay(position: int) -> int:
    if position == 0:
        return 0
    head = min(position, HEAD_QUEUE_POSITIONS)
    tail = max(0, position - HEAD_QUEUE_POSITIONS)
    return HEAD_POSITION_COST_MS * head + TAIL_POSITION_COST_MS * tail


def estimate_conversion_time(
    file_type: str,
    file_size_bytes: int | float,
    quality: str,
    queue_position: int,
) -> int:
    """Estimated milliseconds until a conversion finishes.

    Raises ValidationError for unknown file types or qualities and for negative
    sizes or queue positions.
    """
    rates = PROCESSING_RATES.get(file_type)
    if rates is None:
        raise ValidationError(f"unsupported file type: {file_type!r}")
    rate = rates.get(quality)
    if rate is None:
        raise ValidationError(f"unsupported quality: {quality!r}")
    if isinstance(file_size_bytes, bool) or not isinstance(file_size_bytes, (int, float)):
        raise ValidationError("file size must be a number")
    if file_size_bytes < 0 or not math.isfinite(file_size_bytes):
        raise ValidationError("file size must be a finite, non-negative number")
    if isinstance(queue_position, bool) or not isinstance(queue_position, int):
        raise ValidationError("queue position must be an integer")
    if queue_position < 0:
        raise ValidationError("queue position must not be negative")

    size_mb = max(MIN_SIZE_MB, file_size_bytes / BYTES_PER_MB)
    base = size_mb * rate
    # processing time grows slower than linearly for very large files
    scaled = base * (1 + 0.1 * math.log10(max(1.0, size_mb)))
    total = max(MINIMUM_ESTIMATE_MS, scaled + _queue_delay(queue_position))
    return _round_half_up(total)


def effective_queue_position(waiting: int, tier: "str | UserTier | None") -> int:
    """Tier-discounted view of the queue depth, used only for the ETA."""
    if waiting < 0:
        raise ValidationError("waiting count must not be negative")
    return _round_half_up(waiting * policy_for(tier).queue_discount)
