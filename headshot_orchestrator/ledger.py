"""
Append-only job ledger.
=======================
Every provider call is written as an attempt row; every job gets exactly
one settlement row with its final cost and outcome. Rows are never
updated or deleted.

MemoryLedger  — in-process lists, the default.
SQLiteLedger  — aiosqlite, persistent connection, WAL, schema created once.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

import aiosqlite

from .models import Attempt

logger = logging.getLogger("headshot_orchestrator.ledger")


@dataclass(frozen=True)
class SettlementRecord:
    job_id: str
    account_id: str
    final_cost: Decimal
    outcome: str
    provider_used: Optional[str]
    settled_at: float


class Ledger(ABC):
    @abstractmethod
    async def record_attempt(self, job_id: str, attempt: Attempt) -> None:
        ...

    @abstractmethod
    async def record_settlement(self, job_id: str, final_cost: Decimal, outcome: str,
                                *, account_id: str = "",
                                provider_used: Optional[str] = None) -> None:
        """Write the job's single settlement row. A second call raises ValueError."""

    @abstractmethod
    async def attempts(self, job_id: str) -> list[Attempt]:
        ...

    @abstractmethod
    async def settlements(self, account_id: Optional[str] = None) -> list[SettlementRecord]:
        ...

    async def close(self) -> None:
        return None


class MemoryLedger(Ledger):
    def __init__(self) -> None:
        self._attempts: list[tuple[str, Attempt]] = []
        self._settlements: dict[str, SettlementRecord] = {}

    async def record_attempt(self, job_id: str, attempt: Attempt) -> None:
        self._attempts.append((job_id, attempt))

    async def record_settlement(self, job_id: str, final_cost: Decimal, outcome: str,
                                *, account_id: str = "",
                                provider_used: Optional[str] = None) -> None:
        if job_id in self._settlements:
            raise ValueError(f"Job {job_id!r} already settled")
        self._settlements[job_id] = SettlementRecord(
            job_id, account_id, final_cost, outcome, provider_used, time.time(),
        )

    async def attempts(self, job_id: str) -> list[Attempt]:
        return [a for jid, a in self._attempts if jid == job_id]

    async def settlements(self, account_id: Optional[str] = None) -> list[SettlementRecord]:
        return [
            s for s in self._settlements.values()
            if account_id is None or s.account_id == account_id
        ]


class SQLiteLedger(Ledger):
    """Persistent connection with one-time schema init."""

    def __init__(self, db_path: str | Path) -> None:
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = str(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock: Optional[asyncio.Lock] = None  # lazy — created inside event loop

    async def _get_conn(self) -> aiosqlite.Connection:
        if self._lock is None:
            self._lock = asyncio.Lock()
        if self._conn is None:
            async with self._lock:
                if self._conn is None:
                    conn = await aiosqlite.connect(self._db_path)
                    await conn.execute("PRAGMA journal_mode=WAL")
                    await conn.executescript("""
                        CREATE TABLE IF NOT EXISTS attempts (
                            id          INTEGER PRIMARY KEY AUTOINCREMENT,
                            job_id      TEXT NOT NULL,
                            provider    TEXT NOT NULL,
                            model_id    TEXT NOT NULL,
                            outcome     TEXT NOT NULL,
                            latency     REAL NOT NULL,
                            cost        TEXT NOT NULL,
                            call_number INTEGER NOT NULL,
                            detail      TEXT NOT NULL,
                            created_at  REAL NOT NULL
                        );
                        CREATE INDEX IF NOT EXISTS idx_attempts_job ON attempts(job_id);
                        CREATE TABLE IF NOT EXISTS settlements (
                            job_id        TEXT PRIMARY KEY,
                            account_id    TEXT NOT NULL,
                            final_cost    TEXT NOT NULL,
                            outcome       TEXT NOT NULL,
                            provider_used TEXT,
                            settled_at    REAL NOT NULL
                        );
                    """)
                    await conn.commit()
                    self._conn = conn
        return self._conn

    async def record_attempt(self, job_id: str, attempt: Attempt) -> None:
        db = await self._get_conn()
        await db.execute(
            "INSERT INTO attempts (job_id, provider, model_id, outcome, latency, cost, "
            "call_number, detail, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (job_id, attempt.provider, attempt.model_id, attempt.outcome, attempt.latency,
             str(attempt.cost), attempt.call_number, attempt.detail, time.time()),
        )
        await db.commit()

    async def record_settlement(self, job_id: str, final_cost: Decimal, outcome: str,
                                *, account_id: str = "",
                                provider_used: Optional[str] = None) -> None:
        db = await self._get_conn()
        try:
            await db.execute(
                "INSERT INTO settlements (job_id, account_id, final_cost, outcome, "
                "provider_used, settled_at) VALUES (?, ?, ?, ?, ?, ?)",
                (job_id, account_id, str(final_cost), outcome, provider_used, time.time()),
            )
        except aiosqlite.IntegrityError as exc:
            raise ValueError(f"Job {job_id!r} already settled") from exc
        await db.commit()
        logger.debug("Settlement written: job=%s cost=%s outcome=%s", job_id, final_cost, outcome)

    async def attempts(self, job_id: str) -> list[Attempt]:
        db = await self._get_conn()
        async with db.execute(
            "SELECT provider, model_id, outcome, latency, cost, call_number, detail "
            "FROM attempts WHERE job_id = ? ORDER BY id",
            (job_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            Attempt(provider=r[0], model_id=r[1], outcome=r[2], latency=r[3],
                    cost=Decimal(r[4]), call_number=r[5], detail=r[6])
            for r in rows
        ]

    async def settlements(self, account_id: Optional[str] = None) -> list[SettlementRecord]:
        db = await self._get_conn()
        query = ("SELECT job_id, account_id, final_cost, outcome, provider_used, settled_at "
                 "FROM settlements")
        params: tuple = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        async with db.execute(query + " ORDER BY settled_at", params) as cursor:
            rows = await cursor.fetchall()
        return [
            SettlementRecord(r[0], r[1], Decimal(r[2]), r[3], r[4], r[5])
            for r in rows
        ]

    async def close(self) -> None:
        """Close the aiosqlite connection before the event loop shuts down."""
        if self._conn is not None:
            try:
                await self._conn.close()
                # let the aiosqlite worker thread finish its last callbacks
                await asyncio.sleep(0)
            finally:
                self._conn = None
