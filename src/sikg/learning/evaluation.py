"""Prioritisation quality: Average Percentage of Faults Detected (APFD).

For an execution order of n tests revealing m faults at 1-indexed
positions p1..pm:

    APFD = 1 - (p1 + ... + pm) / (n * m) + 1 / (2n)

An order that runs every failing test first scores close to 1.
"""

from __future__ import annotations

import logging
from typing import Iterable

from pydantic import BaseModel, Field

logger = logging.getLogger("sikg.learning")


class APFDResult(BaseModel):
    apfd: float = 1.0
    total_tests: int = 0
    total_faults: int = 0
    fault_positions: list[int] = Field(default_factory=list)
    average_fault_position: float = 0.0
    early_detection_rate: float = 0.0  # share of faults found in the first half


def execution_order(priority_order: Iterable[str], executed: Iterable[str]) -> list[str]:
    """Executed tests in priority order; tests the ranking missed run last."""
    executed = list(dict.fromkeys(executed))
    ran = set(executed)
    order = [t for t in dict.fromkeys(priority_order) if t in ran]
    ranked = set(order)
    return order + [t for t in executed if t not in ranked]


def calculate_apfd(order: list[str], failed: Iterable[str]) -> APFDResult:
    """APFD of an execution order; 1.0 when there were no faults to find."""
    failed = set(failed)
    n = len(order)
    positions = [index + 1 for index, test_id in enumerate(order) if test_id in failed]
    m = len(positions)
    if n == 0 or m == 0:
        return APFDResult(total_tests=n)

    apfd = 1 - sum(positions) / (n * m) + 1 / (2 * n)
    early = sum(1 for p in positions if p <= n / 2)
    result = APFDResult(
        apfd=max(0.0, min(1.0, apfd)),
        total_tests=n,
        total_faults=m,
        fault_positions=positions,
        average_fault_position=sum(positions) / m,
        early_detection_rate=early / m,
    )
    logger.debug(f"APFD {result.apfd:.3f} ({m} faults in {n} tests)")
    return result
