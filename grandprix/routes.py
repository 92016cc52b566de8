from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlmodel import Field, Session, SQLModel

from .database import (
    RACE_COMPLETED,
    RACE_IN_PROGRESS,
    STATUS_FINISHED,
    STATUS_RACING,
    Race,
    Tournament,
    TournamentPlayer,
    delete_tournament,
    get_session,
    get_tournament,
    list_players,
    list_races,
    replace_races,
)
from .scheduler import (
    GROUP_SIZE,
    MAX_APPEARANCES,
    MIN_PLAYERS,
    ScheduleConstructionFailed,
    ScheduleInfeasible,
    build_schedule_with_retries,
    find_duplicates,
    normalize_participants,
    valid_appearance_counts,
)

router = APIRouter()

logger = logging.getLogger(__name__)


class TournamentCreate(SQLModel):
    name: str | None = Field(default=None, max_length=120)
    players: list[str]
    appearances: int


class RaceResult(SQLModel):
    finish_order: list[str]


@router.get("/health", name="health")
async def health():
    return {"status": "ok"}


@router.get("/appearances", name="appearance_options")
async def appearance_options(
    players: int = Query(..., ge=0),
    max_count: int = Query(MAX_APPEARANCES, ge=1, le=100),
):
    if players < MIN_PLAYERS:
        raise HTTPException(status_code=400, detail=f"At least {MIN_PLAYERS} players are required")
    options = [
        {"appearances": count, "races": players * count // GROUP_SIZE}
        for count in valid_appearance_counts(players, GROUP_SIZE, max_count)
    ]
    return {"players": players, "options": options}


@router.post("/tournaments", status_code=201, name="create_tournament")
async def create_tournament(payload: TournamentCreate, session: Session = Depends(get_session)):
    players = normalize_participants(payload.players)
    _validate_roster(players)
    _validate_appearances(payload.appearances)

    schedule = _build_or_raise(players, payload.appearances)

    tournament = Tournament(
        name=(payload.name or "").strip() or "Grand Prix Night",
        appearances_per_player=payload.appearances,
    )
    session.add(tournament)
    session.commit()
    session.refresh(tournament)

    session.add_all(
        TournamentPlayer(tournament_id=tournament.id, name=name, seat=seat)
        for seat, name in enumerate(players)
    )
    session.commit()

    replace_races(session, tournament, schedule)
    return _tournament_payload(session, tournament)


@router.get("/tournaments/{tournament_id}", name="tournament_detail")
async def tournament_detail(tournament_id: int, session: Session = Depends(get_session)):
    tournament = _get_or_404(session, tournament_id)
    return _tournament_payload(session, tournament)


@router.get("/tournaments/{tournament_id}/current", name="current_race")
async def current_race(tournament_id: int, session: Session = Depends(get_session)):
    tournament = _get_or_404(session, tournament_id)
    race = _current_race(session, tournament)
    if race is None:
        raise HTTPException(status_code=409, detail="Tournament is finished")
    return _race_payload(race, total=len(list_races(session, tournament.id)))


@router.post("/tournaments/{tournament_id}/races/{race_id}/result", name="record_result")
async def record_result(
    tournament_id: int,
    race_id: int,
    payload: RaceResult,
    session: Session = Depends(get_session),
):
    tournament = _get_or_404(session, tournament_id)
    race = session.get(Race, race_id)
    if not race or race.tournament_id != tournament.id:
        raise HTTPException(status_code=404, detail="Race not found")
    if race.status != RACE_IN_PROGRESS:
        raise HTTPException(status_code=409, detail="Only the race in progress accepts results")

    finish_order = [name.strip() for name in payload.finish_order]
    if sorted(finish_order) != sorted(race.racer_names):
        raise HTTPException(status_code=400, detail="Finish order must list each racer in this race exactly once")

    race.finish_order = json.dumps(finish_order)
    race.status = RACE_COMPLETED
    session.add(race)

    races = list_races(session, tournament.id)
    tournament.current_race_index = race.order_index + 1
    if tournament.current_race_index >= len(races):
        tournament.status = STATUS_FINISHED
        logger.info("Tournament %s finished after %d races", tournament.id, len(races))
    else:
        upcoming = races[tournament.current_race_index]
        upcoming.status = RACE_IN_PROGRESS
        session.add(upcoming)
    session.add(tournament)
    session.commit()
    session.refresh(tournament)

    return _tournament_payload(session, tournament)


@router.post("/tournaments/{tournament_id}/reshuffle", name="reshuffle_tournament")
async def reshuffle_tournament(tournament_id: int, session: Session = Depends(get_session)):
    tournament = _get_or_404(session, tournament_id)
    if any(race.status == RACE_COMPLETED for race in list_races(session, tournament.id)):
        raise HTTPException(status_code=409, detail="Races already have results; reshuffle is locked")

    players = list_players(session, tournament.id)
    schedule = _build_or_raise(players, tournament.appearances_per_player)
    replace_races(session, tournament, schedule)
    session.refresh(tournament)
    return _tournament_payload(session, tournament)


@router.delete("/tournaments/{tournament_id}", status_code=204, name="delete_tournament")
async def remove_tournament(tournament_id: int, session: Session = Depends(get_session)):
    tournament = _get_or_404(session, tournament_id)
    delete_tournament(session, tournament)
    return Response(status_code=204)


def _validate_roster(players: list[str]) -> None:
    if len(players) < MIN_PLAYERS:
        raise HTTPException(status_code=400, detail=f"Enter at least {MIN_PLAYERS} unique player names")
    duplicates = find_duplicates(players)
    if duplicates:
        raise HTTPException(status_code=400, detail=f"Duplicate names are not allowed: {', '.join(duplicates)}")


def _validate_appearances(appearances: int) -> None:
    if not 1 <= appearances <= MAX_APPEARANCES:
        raise HTTPException(
            status_code=400, detail=f"Races per player must be between 1 and {MAX_APPEARANCES}"
        )


def _build_or_raise(players: list[str], appearances: int) -> list[list[str]]:
    try:
        return build_schedule_with_retries(players, appearances, GROUP_SIZE)
    except ScheduleInfeasible as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ScheduleConstructionFailed as exc:
        logger.error("Giving up on schedule for %d players: %s", len(players), exc)
        raise HTTPException(
            status_code=503, detail="Could not generate a complete schedule. Please try again."
        ) from exc


def _get_or_404(session: Session, tournament_id: int) -> Tournament:
    try:
        return get_tournament(session, tournament_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Tournament not found") from exc


def _current_race(session: Session, tournament: Tournament) -> Race | None:
    if tournament.status != STATUS_RACING:
        return None
    races = list_races(session, tournament.id)
    if tournament.current_race_index >= len(races):
        return None
    return races[tournament.current_race_index]


def _race_payload(race: Race, *, total: int | None = None) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": race.id,
        "number": race.order_index + 1,
        "racers": race.racer_names,
        "finish_order": race.finish_names,
        "status": race.status,
    }
    if total is not None:
        payload["total"] = total
    return payload


def _tournament_payload(session: Session, tournament: Tournament) -> dict[str, object]:
    races = list_races(session, tournament.id)
    current = _current_race(session, tournament)
    return {
        "id": tournament.id,
        "name": tournament.name,
        "players": list_players(session, tournament.id),
        "appearances_per_player": tournament.appearances_per_player,
        "status": tournament.status,
        "current_race": _race_payload(current, total=len(races)) if current else None,
        "races": [_race_payload(race) for race in races],
    }
