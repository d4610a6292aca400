"""Output verification between the two implementations.

Only the median trial's buffer of each side is compared: every trial of a run
processes the same input with the same algorithm, so one comparison per run
is enough.
"""
from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np

from utils import ImageBuffer

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1
SCAN_CHUNK_BYTES = 1 << 20


@dataclass
class VerificationResult:
    verified: bool
    reason: str
    tolerance: int
    mismatch_index: Optional[int] = None
    value_a: Optional[int] = None
    value_b: Optional[int] = None

    def __bool__(self) -> bool:
        return self.verified


def compare_buffers(buffer_a: Optional[ImageBuffer], buffer_b: Optional[ImageBuffer], tolerance: int = DEFAULT_TOLERANCE) -> VerificationResult:
    """Channel-wise tolerance comparison that stops at the first violating byte."""
    if buffer_a is None or buffer_b is None:
        logger.warning('verification skipped: a median output buffer is missing')
        return VerificationResult(verified=False, reason='missing_buffer', tolerance=tolerance)

    a = buffer_a.pixels
    b = buffer_b.pixels
    if a.size != b.size:
        logger.warning('verification failed: buffer lengths differ (%d vs %d)', a.size, b.size)
        return VerificationResult(verified=False, reason='structural_mismatch', tolerance=tolerance)

    exact = True
    for start in range(0, a.size, SCAN_CHUNK_BYTES):
        stop = start + SCAN_CHUNK_BYTES
        diff = np.abs(a[start:stop].astype(np.int16) - b[start:stop].astype(np.int16))
        over = np.flatnonzero(diff > tolerance)
        if over.size:
            i = start + int(over[0])
            logger.warning('verification failed at byte %d (pixel %d, channel %d): %d vs %d exceeds tolerance %d',
                           i, i // 4, i % 4, int(a[i]), int(b[i]), tolerance)
            return VerificationResult(verified=False, reason='pixel_mismatch', tolerance=tolerance,
                                      mismatch_index=i, value_a=int(a[i]), value_b=int(b[i]))
        if exact and diff.any():
            exact = False

    return VerificationResult(verified=True, reason='identical' if exact else 'within_tolerance', tolerance=tolerance)


def verify_buffers(buffer_a: Optional[ImageBuffer], buffer_b: Optional[ImageBuffer], tolerance: int = DEFAULT_TOLERANCE) -> bool:
    return compare_buffers(buffer_a, buffer_b, tolerance).verified
