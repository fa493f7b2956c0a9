"""Segment snapshots, per-segment grouping flags and derived groups.

Each decode pass replaces the whole snapshot. Selection and link flags
belong to the snapshot they were set on and are never carried into the
next one.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Iterable, Iterator, Sequence

from common.schemas import SegmentPayload


@dataclass(frozen=True)
class Segment:
    id: int
    start: float
    end: float
    text: str
    selected: bool = True
    link_next: bool = False

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class Group:
    members: tuple[Segment, ...]

    @property
    def start(self) -> float:
        return self.members[0].start

    @property
    def end(self) -> float:
        return self.members[-1].end

    @property
    def text(self) -> str:
        return " ".join(m.text for m in self.members)


def segments_from_payloads(payloads: Iterable[SegmentPayload]) -> tuple[Segment, ...]:
    segments = []
    for i, payload in enumerate(payloads, start=1):
        start, end = payload.timestamp
        end = start if end is None else max(end, start)
        segments.append(Segment(id=i, start=start, end=end, text=payload.text.strip()))
    return tuple(segments)


def derive_groups(segments: Sequence[Segment]) -> list[Group]:
    """Split the snapshot into linked runs, keeping only selected members.

    A run ends at any segment whose ``link_next`` is false, selected or
    not; unselected segments inside a run are skipped.
    """
    groups: list[Group] = []
    current: list[Segment] = []
    for seg in segments:
        if seg.selected:
            current.append(seg)
        if not seg.link_next and current:
            groups.append(Group(tuple(current)))
            current = []
    if current:
        groups.append(Group(tuple(current)))
    return groups


class SegmentStore:
    """The current segment snapshot, swapped atomically on replace.

    ``lock`` is held by every mutator; hold it across a multi-step read
    such as an export so a replace cannot land in the middle.
    """

    def __init__(self) -> None:
        self._segments: tuple[Segment, ...] = ()
        self.lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self) -> Iterator[Segment]:
        return iter(self._segments)

    @property
    def snapshot(self) -> tuple[Segment, ...]:
        return self._segments

    def replace(self, payloads: Iterable[SegmentPayload]) -> None:
        snapshot = segments_from_payloads(payloads)
        with self.lock:
            self._segments = snapshot

    def set_links(self, links: Sequence[bool]) -> None:
        """Reset selection and apply a full link pattern in one swap."""
        with self.lock:
            if len(links) != len(self._segments):
                raise ValueError(f"Expected {len(self._segments)} links, got {len(links)}")
            self._segments = tuple(
                replace(seg, selected=True, link_next=link)
                for seg, link in zip(self._segments, links)
            )

    def reset_grouping(self) -> None:
        self.set_links([False] * len(self._segments))

    def _update(self, segment_id: int, **changes) -> Segment:
        with self.lock:
            index = self._index(segment_id)
            updated = replace(self._segments[index], **changes)
            self._segments = self._segments[:index] + (updated,) + self._segments[index + 1:]
            return updated

    def _index(self, segment_id: int) -> int:
        index = segment_id - 1
        if not 0 <= index < len(self._segments) or self._segments[index].id != segment_id:
            raise KeyError(segment_id)
        return index

    def get(self, segment_id: int) -> Segment:
        return self._segments[self._index(segment_id)]

    def set_selected(self, segment_id: int, selected: bool) -> Segment:
        return self._update(segment_id, selected=selected)

    def set_link(self, segment_id: int, link_next: bool) -> Segment:
        return self._update(segment_id, link_next=link_next)

    def groups(self) -> list[Group]:
        return derive_groups(self._segments)
