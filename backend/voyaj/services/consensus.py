"""
Consensus calculators.

DateOverlapResolver turns availability submissions into votable date options.
VoteTally aggregates ballots and detects ties. Both are pure: callers load the
records, these functions only compute.
"""

import math
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, timedelta
from fractions import Fraction
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from voyaj.store.records import (
    DateAvailabilityRecord,
    DestinationSuggestionRecord,
    MemberRecord,
    VoteRecord,
    VoteResult,
)

MAJORITY_RATIO = 0.6

# Overlaps up to this many days become a single option
SINGLE_OPTION_MAX_DAYS = 7
# Overlaps longer than this are split three ways instead of two
LONG_WINDOW_DAYS = 90
DEFAULT_WINDOW_DAY = 15
DEFAULT_WINDOW_LENGTH_DAYS = 7


def format_date_range(start: date, end: date) -> str:
    """'March 15-22', 'March 28 - April 3', or 'December 28, 2025 - January 4, 2026'."""
    if start.year != end.year:
        return f"{start.strftime('%B')} {start.day}, {start.year} - {end.strftime('%B')} {end.day}, {end.year}"
    if start.month == end.month:
        if start.day == end.day:
            return f"{start.strftime('%B')} {start.day}"
        return f"{start.strftime('%B')} {start.day}-{end.day}"
    return f"{start.strftime('%B')} {start.day} - {end.strftime('%B')} {end.day}"


@dataclass(frozen=True)
class DateOption:
    start: date
    end: date
    display: str

    @property
    def key(self) -> str:
        """Stable identifier stored as the vote choice for date polls."""
        return f"{self.start.isoformat()}/{self.end.isoformat()}"

    @property
    def length_days(self) -> int:
        return (self.end - self.start).days

    @classmethod
    def between(cls, start: date, end: date) -> "DateOption":
        return cls(start=start, end=end, display=format_date_range(start, end))

    @classmethod
    def from_key(cls, key: str) -> Optional["DateOption"]:
        try:
            start_raw, end_raw = key.split("/")
            return cls.between(date.fromisoformat(start_raw), date.fromisoformat(end_raw))
        except (ValueError, AttributeError):
            return None


@dataclass
class MemberAvailability:
    """One member's availability, for presenting a conflict by hand."""

    member_name: str
    display: str
    is_flexible: bool = False


class DateOverlapResolver:
    def __init__(
        self,
        single_option_max_days: int = SINGLE_OPTION_MAX_DAYS,
        long_window_days: int = LONG_WINDOW_DAYS,
        today: Optional[Callable[[], date]] = None,
    ):
        self.single_option_max_days = single_option_max_days
        self.long_window_days = long_window_days
        self._today = today or date.today

    def resolve(self, availabilities: Iterable[DateAvailabilityRecord],
                today: Optional[date] = None) -> List[DateOption]:
        """
        Compute the date options everyone can make.

        Returns [] when there is nothing to resolve or the constrained ranges
        do not overlap. An all-flexible group gets one default window.
        """
        entries = list(availabilities)
        if not entries:
            return []

        constrained = [
            a for a in entries
            if not a.is_flexible and a.start_date is not None and a.end_date is not None
        ]
        if not constrained:
            return [self.default_window(today)]

        latest_start = max(a.start_date for a in constrained)
        earliest_end = min(a.end_date for a in constrained)
        if latest_start > earliest_end:
            return []

        return self.split_window(latest_start, earliest_end)

    def split_window(self, start: date, end: date) -> List[DateOption]:
        """Split an inclusive window into contiguous, non-overlapping options."""
        length = (end - start).days
        if length <= self.single_option_max_days:
            return [DateOption.between(start, end)]

        chunks = 3 if length > self.long_window_days else 2
        total_days = length + 1
        chunk_days = total_days // chunks

        options = []
        cursor = start
        for index in range(chunks):
            if index == chunks - 1:
                chunk_end = end
            else:
                chunk_end = cursor + timedelta(days=chunk_days - 1)
            options.append(DateOption.between(cursor, chunk_end))
            cursor = chunk_end + timedelta(days=1)
        return options

    def default_window(self, today: Optional[date] = None) -> DateOption:
        """The 15th of next month, for a week."""
        today = today or self._today()
        if today.month == 12:
            start = date(today.year + 1, 1, DEFAULT_WINDOW_DAY)
        else:
            start = date(today.year, today.month + 1, DEFAULT_WINDOW_DAY)
        return DateOption.between(start, start + timedelta(days=DEFAULT_WINDOW_LENGTH_DAYS))

    @staticmethod
    def describe_conflict(availabilities: Iterable[DateAvailabilityRecord]) -> List[MemberAvailability]:
        described = []
        for entry in availabilities:
            name = entry.member_name or f"Member {entry.member_id}"
            if entry.is_flexible or entry.start_date is None or entry.end_date is None:
                described.append(MemberAvailability(name, "flexible", is_flexible=True))
            else:
                described.append(MemberAvailability(name, format_date_range(entry.start_date, entry.end_date)))
        return described


def majority_threshold(member_count: int, ratio: float = MAJORITY_RATIO) -> int:
    """ceil(member_count * ratio), computed exactly."""
    if member_count <= 0:
        return 0
    return math.ceil(member_count * Fraction(str(ratio)))


class VoteTally:
    @staticmethod
    def results(votes: Iterable[VoteRecord]) -> List[VoteResult]:
        """Counts per choice, highest first. Equal counts keep first-vote order."""
        counts: Dict[str, int] = OrderedDict()
        for vote in votes:
            counts[vote.choice] = counts.get(vote.choice, 0) + 1
        ordered = [VoteResult(choice=choice, count=count) for choice, count in counts.items()]
        # sorted() is stable, so first-vote order survives among equal counts
        return sorted(ordered, key=lambda r: r.count, reverse=True)

    @staticmethod
    def is_tie(results: Sequence[VoteResult]) -> bool:
        return len(results) >= 2 and results[0].count == results[1].count

    @staticmethod
    def tied_choices(results: Sequence[VoteResult]) -> List[str]:
        if not results:
            return []
        top = results[0].count
        return [r.choice for r in results if r.count == top]

    @staticmethod
    def leader(results: Sequence[VoteResult]) -> Optional[VoteResult]:
        return results[0] if results else None

    @staticmethod
    def pending_voters(members: Iterable[MemberRecord], votes: Iterable[VoteRecord]) -> List[MemberRecord]:
        voted = {vote.member_id for vote in votes}
        return [member for member in members if member.id not in voted]

    @staticmethod
    def majority_threshold(member_count: int, ratio: float = MAJORITY_RATIO) -> int:
        return majority_threshold(member_count, ratio)

    @staticmethod
    def votes_still_needed(member_count: int, vote_count: int, ratio: float = MAJORITY_RATIO) -> int:
        return max(0, majority_threshold(member_count, ratio) - vote_count)


def consolidate_suggestions(suggestions: Iterable[DestinationSuggestionRecord]) -> List[str]:
    """Unique destinations across all members, case-insensitive, in submission order."""
    seen = set()
    unique = []
    for suggestion in suggestions:
        for destination in suggestion.destinations:
            cleaned = destination.strip()
            if not cleaned or cleaned.lower() in seen:
                continue
            seen.add(cleaned.lower())
            unique.append(cleaned)
    return unique
