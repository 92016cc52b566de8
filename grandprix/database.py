"""Database models and helpers for tournaments, players, and races."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Iterator

from sqlmodel import Field, Session, SQLModel, create_engine, select

DEFAULT_SQLITE_PATH = "sqlite:///./grand_prix.db"

STATUS_RACING = "racing"
STATUS_FINISHED = "finished"
RACE_PENDING = "pending"
RACE_IN_PROGRESS = "in_progress"
RACE_COMPLETED = "completed"

logger = logging.getLogger(__name__)


def _build_engine_url() -> str:
    """Return the configured database URL or fall back to SQLite."""
    return os.environ.get("DATABASE_URL", DEFAULT_SQLITE_PATH)


def _build_engine():
    url = _build_engine_url()
    engine_kwargs = {}
    if url.startswith("sqlite"):
        # SQLite needs check_same_thread disabled for FastAPI concurrency,
        # but passing this flag to other drivers (e.g., psycopg2) raises errors.
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **engine_kwargs)


engine = _build_engine()


class Tournament(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(default="Grand Prix Night", nullable=False, max_length=120)
    appearances_per_player: int = Field(nullable=False)
    current_race_index: int = Field(default=0, nullable=False)
    status: str = Field(default=STATUS_RACING, nullable=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), nullable=False)


class TournamentPlayer(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", nullable=False, index=True)
    name: str = Field(nullable=False, max_length=120)
    seat: int = Field(nullable=False)


class Race(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", nullable=False, index=True)
    order_index: int = Field(nullable=False, index=True)
    racers: str = Field(nullable=False)
    finish_order: str | None = Field(default=None)
    status: str = Field(default=RACE_PENDING, nullable=False)

    @property
    def racer_names(self) -> list[str]:
        return json.loads(self.racers)

    @property
    def finish_names(self) -> list[str] | None:
        return json.loads(self.finish_order) if self.finish_order else None


def init_db() -> None:
    """Create tables if they don't already exist."""
    SQLModel.metadata.create_all(engine)


def get_session() -> Iterator[Session]:
    """Yield a SQLModel session for dependency injection."""
    with Session(engine) as session:
        yield session


def get_tournament(session: Session, tournament_id: int) -> Tournament:
    tournament = session.get(Tournament, tournament_id)
    if tournament:
        return tournament
    raise LookupError(f"Tournament {tournament_id} not found.")


def list_players(session: Session, tournament_id: int) -> list[str]:
    players = session.exec(
        select(TournamentPlayer)
        .where(TournamentPlayer.tournament_id == tournament_id)
        .order_by(TournamentPlayer.seat)
    ).all()
    return [player.name for player in players]


def list_races(session: Session, tournament_id: int) -> list[Race]:
    return session.exec(
        select(Race).where(Race.tournament_id == tournament_id).order_by(Race.order_index)
    ).all()


def replace_races(session: Session, tournament: Tournament, schedule: list[list[str]]) -> list[Race]:
    """Swap the tournament's races for a freshly built schedule and rewind it."""
    for race in list_races(session, tournament.id):
        session.delete(race)

    races = [
        Race(
            tournament_id=tournament.id,
            order_index=index,
            racers=json.dumps(group),
            status=RACE_IN_PROGRESS if index == 0 else RACE_PENDING,
        )
        for index, group in enumerate(schedule)
    ]
    session.add_all(races)
    tournament.current_race_index = 0
    tournament.status = STATUS_RACING if races else STATUS_FINISHED
    session.add(tournament)
    session.commit()
    logger.info("Stored %d races for tournament %s", len(races), tournament.id)
    return list_races(session, tournament.id)


def delete_tournament(session: Session, tournament: Tournament) -> None:
    for race in list_races(session, tournament.id):
        session.delete(race)
    players = session.exec(
        select(TournamentPlayer).where(TournamentPlayer.tournament_id == tournament.id)
    ).all()
    for player in players:
        session.delete(player)
    session.delete(tournament)
    session.commit()
