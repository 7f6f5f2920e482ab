from collections.abc import Generator
from pathlib import Path

from fastapi import Request
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker


Base = declarative_base()


def _ensure_sqlite_path(url: str) -> None:
    if not url.startswith("sqlite"):
        return

    parsed = make_url(url)
    database = parsed.database
    if not database or database == ":memory:":
        return

    path = Path(database)
    path.parent.mkdir(parents=True, exist_ok=True)


def create_db_engine(url: str, *, echo: bool = False) -> Engine:
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {
        "echo": echo,
        "future": True,
        "pool_pre_ping": True,
    }

    parsed = make_url(url)
    backend = parsed.get_backend_name()
    driver = parsed.get_driver_name()

    if backend == "sqlite":
        connect_args["check_same_thread"] = False
        _ensure_sqlite_path(url)
    else:
        # Supabase/PgBouncer drops idle connections; recycle before that happens.
        engine_kwargs["pool_recycle"] = 300

        if backend.startswith("postgresql"):
            connect_args.setdefault("keepalives", 1)
            connect_args.setdefault("keepalives_idle", 120)
            connect_args.setdefault("keepalives_interval", 30)
            connect_args.setdefault("keepalives_count", 5)
            # PgBouncer's transaction pooler rejects PREPARE.
            if driver == "psycopg":
                connect_args.setdefault("prepare_threshold", None)

    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    return create_engine(url, **engine_kwargs)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=True, autocommit=False, future=True)


def _ensure_column(engine: Engine, table: str, column: str, definition: str) -> None:
    inspector = inspect(engine)
    columns = {col["name"] for col in inspector.get_columns(table)}
    if column in columns:
        return
    with engine.begin() as connection:
        connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {definition}"))


def _apply_schema_updates(engine: Engine) -> None:
    # Older caches were created before like counts and pool totals were mirrored.
    _ensure_column(engine, "market_index", "likes_count", "INTEGER DEFAULT 0")
    _ensure_column(engine, "market_index", "power_likes_count", "INTEGER")
    _ensure_column(engine, "market_index", "total_moon_bets", "BIGINT DEFAULT 0")
    _ensure_column(engine, "market_index", "total_doom_bets", "BIGINT DEFAULT 0")
    with engine.begin() as connection:
        connection.execute(
            text("UPDATE market_index SET likes_count = COALESCE(likes_count, 0)")
        )
        connection.execute(
            text(
                "CREATE INDEX IF NOT EXISTS ix_market_index_status_deadline"
                " ON market_index (status, deadline)"
            )
        )


def init_db(engine: Engine) -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    _apply_schema_updates(engine)


def get_db(request: Request) -> Generator[Session, None, None]:
    session = request.app.state.context.session_factory()
    try:
        yield session
    finally:
        session.close()
