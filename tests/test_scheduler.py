from __future__ import annotations

import logging
import random
from collections import Counter

import pytest

from grandprix import scheduler
from grandprix.scheduler import (
    GROUP_SIZE,
    ScheduleConstructionFailed,
    ScheduleInfeasible,
    build_schedule,
    build_schedule_with_retries,
    find_duplicates,
    is_feasible,
    normalize_participants,
    valid_appearance_counts,
)


def _players(count: int) -> list[str]:
    return [f"Racer {index + 1}" for index in range(count)]


def _validate_schedule(schedule: list[list[str]], players: list[str], appearances: int, group_size: int) -> None:
    assert len(schedule) == len(players) * appearances // group_size

    counts: Counter[str] = Counter()
    for race in schedule:
        assert len(race) == group_size
        assert len(set(race)) == group_size
        assert set(race) <= set(players)
        counts.update(race)

    assert {player: counts[player] for player in players} == {player: appearances for player in players}


@pytest.mark.parametrize("n", range(0, 15))
@pytest.mark.parametrize("a", range(0, 7))
@pytest.mark.parametrize("g", [1, 2, 3, 4, 5])
def test_is_feasible_matches_divisibility_rule(n, a, g):
    expected = a > 0 and n >= g and (n * a) % g == 0
    assert is_feasible(n, a, g) is expected


def test_valid_appearance_counts_for_common_rosters():
    assert valid_appearance_counts(4) == list(range(1, 13))
    assert valid_appearance_counts(6) == [2, 4, 6, 8, 10, 12]
    assert valid_appearance_counts(5) == [4, 8, 12]
    assert valid_appearance_counts(7, max_count=6) == [4]


def test_valid_appearance_counts_empty_when_nothing_fits():
    assert valid_appearance_counts(3) == []
    assert valid_appearance_counts(5, max_count=3) == []


def test_normalize_participants_drops_blank_rows():
    assert normalize_participants(["  Luigi ", "", "   ", None, "Peach"]) == ["Luigi", "Peach"]


def test_find_duplicates_reports_each_name_once():
    assert find_duplicates(["Toad", "Yoshi", "Toad", "Toad", "Wario", "Yoshi"]) == ["Toad", "Yoshi"]
    assert find_duplicates(["Toad", "toad"]) == []


def test_eight_players_three_races_each():
    players = list("ABCDEFGH")
    schedule = build_schedule(players, 3, GROUP_SIZE, rng=random.Random(8))
    assert len(schedule) == 6
    _validate_schedule(schedule, players, 3, GROUP_SIZE)


def test_five_players_one_race_each_is_infeasible():
    with pytest.raises(ScheduleInfeasible) as excinfo:
        build_schedule(list("ABCDE"), 1, GROUP_SIZE)
    assert excinfo.value.participant_count == 5
    assert excinfo.value.appearance_count == 1


def test_too_few_players_is_infeasible():
    with pytest.raises(ScheduleInfeasible):
        build_schedule(list("ABC"), 4, GROUP_SIZE)


def test_four_players_race_together_every_time():
    players = list("ABCD")
    orders = set()
    for seed in range(20):
        schedule = build_schedule(players, 2, GROUP_SIZE, rng=random.Random(seed))
        assert len(schedule) == 2
        assert all(set(race) == set(players) for race in schedule)
        orders.update(tuple(race) for race in schedule)
    # Display order is shuffled independently for each race.
    assert len(orders) > 1


def test_duplicate_participants_rejected():
    with pytest.raises(ValueError, match="Duplicate"):
        build_schedule(["A", "B", "C", "D", "A"], 4, GROUP_SIZE)


@pytest.mark.parametrize("player_count", range(4, 17))
def test_every_feasible_roster_is_fair(player_count):
    players = _players(player_count)
    for appearances in valid_appearance_counts(player_count, max_count=8):
        for seed in range(5):
            schedule = build_schedule(players, appearances, GROUP_SIZE, rng=random.Random(seed))
            _validate_schedule(schedule, players, appearances, GROUP_SIZE)


@pytest.mark.parametrize("group_size", [2, 3, 5, 6])
def test_other_group_sizes(group_size):
    players = _players(group_size * 2 + 1)
    appearances = group_size
    schedule = build_schedule(players, appearances, group_size, rng=random.Random(3))
    _validate_schedule(schedule, players, appearances, group_size)


def test_schedule_varies_between_runs():
    players = list("ABCDEFGH")
    first = build_schedule(players, 3, GROUP_SIZE, rng=random.Random(0))
    others = [build_schedule(players, 3, GROUP_SIZE, rng=random.Random(seed)) for seed in range(1, 20)]
    assert any(schedule != first for schedule in others)


def test_same_seed_reproduces_schedule():
    players = _players(10)
    first = build_schedule(players, 2, GROUP_SIZE, rng=random.Random(42))
    second = build_schedule(players, 2, GROUP_SIZE, rng=random.Random(42))
    assert first == second


def test_input_order_does_not_leak_into_first_race():
    players = _players(12)
    first_races = {
        frozenset(build_schedule(players, 1, GROUP_SIZE, rng=random.Random(seed))[0]) for seed in range(20)
    }
    assert len(first_races) > 1


def test_exhausted_attempt_budget_raises(monkeypatch):
    monkeypatch.setattr(scheduler, "ATTEMPT_FACTOR", 0)
    with pytest.raises(ScheduleConstructionFailed) as excinfo:
        build_schedule(list("ABCDEFGH"), 2, GROUP_SIZE)
    assert excinfo.value.built == 0
    assert excinfo.value.expected == 4


def test_retries_log_and_reraise(monkeypatch, caplog):
    monkeypatch.setattr(scheduler, "ATTEMPT_FACTOR", 0)
    with caplog.at_level(logging.WARNING, logger="grandprix.scheduler"):
        with pytest.raises(ScheduleConstructionFailed):
            build_schedule_with_retries(list("ABCDEFGH"), 2, GROUP_SIZE, attempts=3)
    assert sum("Schedule attempt" in record.getMessage() for record in caplog.records) == 3


def test_retries_recover_after_a_failed_attempt(monkeypatch):
    calls = {"count": 0}
    original = scheduler.build_schedule

    def flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ScheduleConstructionFailed(0, 2, 0)
        return original(*args, **kwargs)

    monkeypatch.setattr(scheduler, "build_schedule", flaky)
    schedule = build_schedule_with_retries(list("ABCD"), 2, GROUP_SIZE, attempts=2)
    assert calls["count"] == 2
    _validate_schedule(schedule, list("ABCD"), 2, GROUP_SIZE)


def test_retries_do_not_retry_infeasible(monkeypatch):
    calls = {"count": 0}
    original = scheduler.build_schedule

    def counting(*args, **kwargs):
        calls["count"] += 1
        return original(*args, **kwargs)

    monkeypatch.setattr(scheduler, "build_schedule", counting)
    with pytest.raises(ScheduleInfeasible):
        build_schedule_with_retries(list("ABCDE"), 1, GROUP_SIZE, attempts=5)
    assert calls["count"] == 1


def test_retry_log_counts_at_least_one_attempt(monkeypatch, caplog):
    monkeypatch.setattr(scheduler, "ATTEMPT_FACTOR", 0)
    with caplog.at_level(logging.WARNING, logger="grandprix.scheduler"):
        with pytest.raises(ScheduleConstructionFailed):
            build_schedule_with_retries(list("ABCDEFGH"), 2, GROUP_SIZE, attempts=0)
    messages = [record.getMessage() for record in caplog.records if "Schedule attempt" in record.getMessage()]
    assert len(messages) == 1
    assert messages[0].startswith("Schedule attempt 1/1 failed")


@pytest.mark.parametrize("player_count", [4, 5, 6, 7, 9, 13])
def test_ranked_pick_never_dead_ends(player_count, caplog):
    players = _players(player_count)
    with caplog.at_level(logging.DEBUG, logger="grandprix.scheduler"):
        for appearances in valid_appearance_counts(player_count, max_count=8):
            for seed in range(5):
                build_schedule(players, appearances, GROUP_SIZE, rng=random.Random(seed))
    assert not any("Dead end" in record.getMessage() for record in caplog.records)
    assert any("Scheduled" in record.getMessage() for record in caplog.records)
