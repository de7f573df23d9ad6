"""Database layer: persists exploration runs and their good moves in PostgreSQL."""

import os
from contextlib import contextmanager
from uuid import UUID

import psycopg
from psycopg.types.json import Jsonb

from models import ExplorationRun, GoodMove
from settings import ExplorerSettings

GOOD_MOVE_COLUMNS = [
    "fen", "move", "san", "total_games", "total_games_move", "popularity",
    "white_points_pct", "average_rating", "average_rating_all_moves", "rating_rank",
    "rating_percentile", "probability", "raw_probability", "performance",
    "evaluation", "average_rating_opponents",
]

SCHEMA = """
CREATE TABLE IF NOT EXISTS exploration_runs (
    run_id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    root_fen TEXT NOT NULL,
    target_color TEXT NOT NULL,
    max_depth INTEGER NOT NULL,
    root_eval DOUBLE PRECISION,
    root_total_games INTEGER,
    error_count INTEGER NOT NULL DEFAULT 0,
    settings JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    finished_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS good_moves (
    good_move_id BIGSERIAL PRIMARY KEY,
    run_id UUID NOT NULL REFERENCES exploration_runs (run_id) ON DELETE CASCADE,
    sort_order INTEGER NOT NULL,
    fen TEXT NOT NULL,
    move TEXT NOT NULL,
    san TEXT,
    total_games INTEGER NOT NULL,
    total_games_move INTEGER NOT NULL,
    popularity DOUBLE PRECISION NOT NULL,
    white_points_pct DOUBLE PRECISION,
    average_rating INTEGER,
    average_rating_all_moves DOUBLE PRECISION,
    rating_rank INTEGER,
    rating_percentile DOUBLE PRECISION,
    probability DOUBLE PRECISION,
    raw_probability DOUBLE PRECISION,
    performance DOUBLE PRECISION,
    evaluation DOUBLE PRECISION,
    average_rating_opponents DOUBLE PRECISION
);

CREATE INDEX IF NOT EXISTS good_moves_fen_idx ON good_moves (fen);
"""


def get_connection_string() -> str:
    """Get database connection string from environment."""
    return os.environ.get(
        "DATABASE_URL",
        "postgresql://localhost:5432/opening_explorer?user=postgres&password=postgres",
    )


@contextmanager
def get_connection():
    """Context manager for database connections."""
    conn = psycopg.connect(get_connection_string())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_schema(conn: psycopg.Connection) -> None:
    with conn.cursor() as cur:
        cur.execute(SCHEMA)


def insert_run(conn: psycopg.Connection, run: ExplorationRun, settings: ExplorerSettings | None = None) -> UUID:
    """Insert the run header. Returns its run_id."""
    settings_doc = Jsonb(settings.model_dump(exclude={"lichess_token"})) if settings else None
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO exploration_runs (root_fen, target_color, max_depth, root_eval, root_total_games, settings)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING run_id
            """,
            (run.root_fen, run.target_color, run.max_depth, run.root_eval, run.root_total_games, settings_doc),
        )
        row = cur.fetchone()
    if not row:
        raise RuntimeError("insert_run failed to return row")
    return row[0]


def insert_good_move(conn: psycopg.Connection, run_id: UUID, move: GoodMove, sort_order: int = 0) -> None:
    placeholders = ", ".join(["%s"] * (len(GOOD_MOVE_COLUMNS) + 2))
    with conn.cursor() as cur:
        cur.execute(
            f"INSERT INTO good_moves (run_id, sort_order, {', '.join(GOOD_MOVE_COLUMNS)}) VALUES ({placeholders})",
            (run_id, sort_order, *(getattr(move, c) for c in GOOD_MOVE_COLUMNS)),
        )


def finish_run(conn: psycopg.Connection, run_id: UUID, error_count: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE exploration_runs SET error_count = %s, finished_at = NOW() WHERE run_id = %s",
            (error_count, run_id),
        )


def save_run(conn: psycopg.Connection, run: ExplorationRun, settings: ExplorerSettings | None = None) -> UUID:
    """Persist a finished run and its good moves, keeping their order."""
    run_id = insert_run(conn, run, settings)
    for i, move in enumerate(run.good_moves):
        insert_good_move(conn, run_id, move, sort_order=i)
    finish_run(conn, run_id, run.error_count)
    conn.commit()
    return run_id


def get_good_moves(conn: psycopg.Connection, run_id: UUID) -> list[GoodMove]:
    """Good moves of a run, in the order they were found."""
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {', '.join(GOOD_MOVE_COLUMNS)} FROM good_moves WHERE run_id = %s ORDER BY sort_order",
            (run_id,),
        )
        rows = cur.fetchall()
    return [GoodMove(**dict(zip(GOOD_MOVE_COLUMNS, row))) for row in rows]
