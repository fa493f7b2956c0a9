from __future__ import annotations

import enum
import logging
from typing import Sequence

from studio.segments import SegmentStore

logger = logging.getLogger(__name__)


class GroupMode(str, enum.Enum):
    TIME = "time"
    COUNT = "count"
    TOTAL = "total"


def group_by_time(durations: Sequence[float], max_seconds: float) -> list[bool]:
    """Link segments while the running duration stays under ``max_seconds``.

    The segment that brings the total to or past the limit closes its
    group and the accumulator restarts at zero.
    """
    links = [False] * len(durations)
    accumulated = 0.0
    for i, duration in enumerate(durations[:-1]):
        accumulated += duration
        if accumulated >= max_seconds:
            accumulated = 0.0
        else:
            links[i] = True
    return links


def group_by_count(total: int, per_group: int) -> list[bool]:
    """Every ``per_group``-th segment closes a group."""
    per_group = max(1, int(per_group))
    return [(i + 1) % per_group != 0 and i < total - 1 for i in range(total)]


def group_by_total(total: int, groups: int) -> list[bool]:
    """Spread ``total`` segments over ``groups`` groups, larger ones first."""
    if total == 0:
        return []
    groups = min(max(1, int(groups)), total)
    base, remainder = divmod(total, groups)
    sizes = [base + 1] * remainder + [base] * (groups - remainder)

    links = [False] * total
    index = 0
    for size in sizes:
        for _ in range(size - 1):
            links[index] = True
            index += 1
        index += 1
    links[-1] = False
    return links


def compute_links(durations: Sequence[float], mode: GroupMode, value: float) -> list[bool]:
    mode = GroupMode(mode)
    if mode is GroupMode.TIME:
        return group_by_time(durations, value)
    if mode is GroupMode.COUNT:
        return group_by_count(len(durations), int(value))
    return group_by_total(len(durations), int(value))


def apply_grouping(store: SegmentStore, mode: GroupMode | str, value: float) -> list[bool]:
    """Reset every segment to selected and unlinked, then link per ``mode``."""
    with store.lock:
        if not len(store):
            return []
        links = compute_links([seg.duration for seg in store], GroupMode(mode), value)
        store.set_links(links)
    logger.info("Grouped %d segments by %s=%s into %d groups", len(links), GroupMode(mode).value, value, links.count(False))
    return links
