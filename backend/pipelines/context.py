from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.db import create_db_engine, create_session_factory, init_db
from integrations.ledger import LedgerClient
from integrations.neynar import NeynarClient


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineContext:
    """Runtime dependencies shared by the jobs and the API.

    Clients are built on first use from ``settings`` unless the caller
    provides them, which is how tests inject fakes.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: sessionmaker[Session] | None = None,
        ledger: LedgerClient | None = None,
        neynar: NeynarClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.clock = clock
        self._engine: Engine | None = None
        self._session_factory = session_factory
        self._ledger = ledger
        self._neynar = neynar
        self._owns_neynar = neynar is None

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self.open_database()

    def open_database(self) -> sessionmaker[Session]:
        """Create the engine and apply schema updates on first use."""

        if self._session_factory is None:
            self._engine = create_db_engine(
                self.settings.resolved_database_url, echo=self.settings.debug
            )
            init_db(self._engine)
            self._session_factory = create_session_factory(self._engine)
        return self._session_factory

    @property
    def ledger(self) -> LedgerClient:
        if self._ledger is None:
            self._ledger = LedgerClient.from_settings(self.settings)
        return self._ledger

    @property
    def neynar(self) -> NeynarClient:
        if self._neynar is None:
            self._neynar = NeynarClient.from_settings(self.settings)
        return self._neynar

    def now(self) -> datetime:
        return self.clock()

    def close(self) -> None:
        if self._owns_neynar and self._neynar is not None:
            self._neynar.close()
            self._neynar = None
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
