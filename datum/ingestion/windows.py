"""
ingestion/windows.py
Resume point and block-window planning for one scan job.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class Window:
    from_block: int
    to_block: int

    def __len__(self) -> int:
        return self.to_block - self.from_block + 1


def effective_start(start_block: int, last_scanned_block: int, overlap: int) -> int:
    """
    First block to scan on this run.

    A cursor that has never advanced starts at its fixed start block; otherwise the
    trailing `overlap` blocks are walked again to absorb short reorgs, but never
    before the start block.
    """
    if last_scanned_block > 0:
        return max(start_block, last_scanned_block - overlap)
    return start_block


def plan_windows(from_block: int, head_block: int, window_size: int) -> Iterator[Window]:
    """Contiguous, non-overlapping windows tiling [from_block, head_block]."""
    if window_size < 0:
        raise ValueError("window_size must be non-negative")
    b = from_block
    while b <= head_block:
        yield Window(b, min(b + window_size, head_block))
        b += window_size + 1


def window_count(from_block: int, head_block: int, window_size: int) -> int:
    if from_block > head_block:
        return 0
    return math.ceil((head_block - from_block + 1) / (window_size + 1))
