"""Overlap checks for a proposed time range against a user's existing occurrences."""

from abc import ABC, abstractmethod
from datetime import timedelta

from services.materializer import materialize_for_owner


def ranges_overlap(start, end, other_start, other_end):
    """Open-ended ranges (no end) behave like a single instant at their start."""
    if end is None and other_end is None:
        return start == other_start
    if other_end is None:
        return start <= other_start < end
    if end is None:
        return other_start <= start < other_end
    return not (end <= other_start or start >= other_end)


class ConflictDetector(ABC):
    """
    Collaborator boundary. Implementations return the occurrences of `owner_id`
    that overlap [start, end), excluding `exclude_series_id` when given.
    """

    @abstractmethod
    def find_overlaps(self, owner_id, start, end=None, exclude_series_id=None):
        raise NotImplementedError


class MaterializedConflictDetector(ConflictDetector):
    """Checks against the owner's materialized occurrences on the affected days."""

    def find_overlaps(self, owner_id, start, end=None, exclude_series_id=None):
        last_day = (end or start).date()
        # Occurrences from the day before may run past midnight.
        first_day = (start - timedelta(days=1)).date()
        overlaps = []
        for occ in materialize_for_owner(owner_id, first_day, last_day):
            if exclude_series_id is not None and occ.series_id == exclude_series_id:
                continue
            if ranges_overlap(start, end, occ.start, occ.end):
                overlaps.append(occ)
        return overlaps
