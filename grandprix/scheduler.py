"""Fair race scheduling for Grand Prix Night.

Every player races the same number of times, every race is a full grid of
``GROUP_SIZE`` distinct players, and the line-ups are drawn at random so two
tournaments with the same roster look different.
"""

from __future__ import annotations

import logging
import os
import random
from collections import Counter
from typing import Hashable, Iterable, List, Sequence, TypeVar

GROUP_SIZE = 4
MIN_PLAYERS = 4
MAX_APPEARANCES = int(os.getenv("MAX_APPEARANCES", "12"))
SCHEDULE_RETRIES = int(os.getenv("SCHEDULE_RETRIES", "3"))
ATTEMPT_FACTOR = 4

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=Hashable)


class ScheduleError(Exception):
    """Base class for scheduling failures."""


class ScheduleInfeasible(ScheduleError, ValueError):
    """The player and appearance counts cannot fill every race exactly."""

    def __init__(self, participant_count: int, appearance_count: int, group_size: int) -> None:
        self.participant_count = participant_count
        self.appearance_count = appearance_count
        self.group_size = group_size
        super().__init__(
            f"{participant_count} players × {appearance_count} races each cannot be split "
            f"into full races of {group_size}."
        )


class ScheduleConstructionFailed(ScheduleError, RuntimeError):
    """The randomized construction ran out of attempts."""

    def __init__(self, built: int, expected: int, attempts: int) -> None:
        self.built = built
        self.expected = expected
        self.attempts = attempts
        super().__init__(
            f"Built {built} of {expected} races before exhausting {attempts} attempts."
        )


def normalize_participants(entries: Iterable[str | None]) -> List[str]:
    """Return participant names stripped of whitespace, ignoring blank rows."""
    return [value.strip() for value in entries if value and value.strip()]


def find_duplicates(names: Iterable[P]) -> List[P]:
    """Return names entered more than once, in the order they first repeat."""
    seen: set[P] = set()
    duplicates: List[P] = []
    for name in names:
        if name in seen and name not in duplicates:
            duplicates.append(name)
        seen.add(name)
    return duplicates


def is_feasible(participant_count: int, appearance_count: int, group_size: int = GROUP_SIZE) -> bool:
    if group_size <= 0 or appearance_count <= 0:
        return False
    return participant_count >= group_size and (participant_count * appearance_count) % group_size == 0


def valid_appearance_counts(
    participant_count: int, group_size: int = GROUP_SIZE, max_count: int = MAX_APPEARANCES
) -> List[int]:
    """List every races-per-player choice up to ``max_count`` that fills all races."""
    return [count for count in range(1, max_count + 1) if is_feasible(participant_count, count, group_size)]


def build_schedule(
    participants: Iterable[P],
    appearance_count: int,
    group_size: int = GROUP_SIZE,
    *,
    rng: random.Random | None = None,
) -> List[List[P]]:
    """Build the ordered list of races.

    Players with the fewest races so far are picked first, ties broken by a
    fresh random draw on every iteration. When the ranked pick comes up short
    the race is topped up from whoever is still eligible; a race that still
    cannot be filled is thrown away without touching the tallies and the
    iteration is retried. Picking the lowest tallies keeps every tally within
    one of the rest, so for feasible input the ranked pick always fills the
    race and the top-up and discard branch cannot be reached. The number of
    iterations is bounded, so this either returns a complete schedule or
    raises.
    """
    roster = list(participants)
    duplicates = find_duplicates(roster)
    if duplicates:
        raise ValueError(f"Duplicate participants: {', '.join(map(str, duplicates))}")
    if not is_feasible(len(roster), appearance_count, group_size):
        raise ScheduleInfeasible(len(roster), appearance_count, group_size)

    rng = rng or random.Random()
    tally: Counter[P] = Counter({player: 0 for player in roster})
    total_groups = len(roster) * appearance_count // group_size
    max_attempts = total_groups * len(roster) * ATTEMPT_FACTOR

    schedule: List[List[P]] = []
    attempts = 0
    while len(schedule) < total_groups:
        if attempts >= max_attempts:
            raise ScheduleConstructionFailed(len(schedule), total_groups, max_attempts)
        attempts += 1

        draw = {player: rng.random() for player in roster}
        ranked = sorted(roster, key=lambda player: (tally[player], draw[player]))
        eligible = [player for player in ranked if tally[player] < appearance_count]

        group = eligible[:group_size]
        if len(group) < group_size:
            # Top up from anyone still eligible, regardless of rank.
            leftovers = [player for player in roster if tally[player] < appearance_count and player not in group]
            rng.shuffle(leftovers)
            group.extend(leftovers[: group_size - len(group)])

        if len(group) < group_size or len(set(group)) != group_size:
            logger.debug(
                "Dead end building race %d (%d of %d seats filled); retrying",
                len(schedule) + 1,
                len(set(group)),
                group_size,
            )
            continue

        tally.update(group)
        rng.shuffle(group)
        schedule.append(group)

    _check_schedule(schedule, roster, appearance_count, group_size)
    logger.info(
        "Scheduled %d races for %d players (%d each) in %d attempts",
        len(schedule),
        len(roster),
        appearance_count,
        attempts,
    )
    return schedule


def build_schedule_with_retries(
    participants: Sequence[P],
    appearance_count: int,
    group_size: int = GROUP_SIZE,
    *,
    attempts: int = SCHEDULE_RETRIES,
    rng: random.Random | None = None,
) -> List[List[P]]:
    """Call :func:`build_schedule` again with fresh randomness when construction fails."""
    rng = rng or random.Random()
    last_error: ScheduleConstructionFailed | None = None
    total = max(attempts, 1)
    for attempt in range(1, total + 1):
        try:
            return build_schedule(participants, appearance_count, group_size, rng=rng)
        except ScheduleConstructionFailed as exc:
            logger.warning("Schedule attempt %d/%d failed: %s", attempt, total, exc)
            last_error = exc
    assert last_error is not None
    raise last_error


def _check_schedule(schedule: List[List[P]], roster: List[P], appearance_count: int, group_size: int) -> None:
    expected = len(roster) * appearance_count // group_size
    assert len(schedule) == expected, f"expected {expected} races, built {len(schedule)}"
    counts: Counter[P] = Counter()
    for group in schedule:
        assert len(group) == group_size and len(set(group)) == group_size, f"malformed race {group!r}"
        counts.update(group)
    assert all(counts[player] == appearance_count for player in roster), "uneven race counts"
