"""
Database Module - Record Store
==============================
Persistence for cases and the append-only case event log.

This module provides:
- CaseStore interface (swap Postgres / in-memory without code changes)
- AsyncPG connection pool for PostgreSQL with start-up migrations
- Atomic server-side payload merge (jsonb ||) for upserts
- Compare-and-set payload merge keyed on extract_status
- Event log with per-external-id deduplication
- In-memory store for development and tests, able to simulate
  read visibility lag and failing reads

pip install asyncpg
"""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
import structlog

from schemas.case_definitions import Case, CaseEvent, CaseEventType, utcnow
from settings import Settings

logger = structlog.get_logger().bind(component="database")

# Columns that may be set directly (everything else goes through payload)
UPDATABLE_FIELDS = (
    "email",
    "status",
    "unlocked",
    "stripe_checkout_session_id",
    "stripe_payment_intent_id",
    "amount_total",
    "currency",
)


# =============================================================================
# STORE INTERFACE
# =============================================================================

class CaseStore(ABC):
    """Abstract record store addressed by case token."""

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def get_by_token(self, token: str) -> Optional[Case]:
        pass

    @abstractmethod
    async def upsert_merge(self, token: str, fragment: Dict[str, Any]) -> Tuple[Case, bool]:
        """Insert a new case or shallow-merge fragment over its payload.

        Returns (case, created). Must be a single atomic step: a concurrent
        insert for the same token turns into a merge, never an error.
        """

    @abstractmethod
    async def merge_payload(
        self,
        token: str,
        fragment: Dict[str, Any],
        expect_extract_status: Optional[str] = None,
    ) -> Optional[Case]:
        """Atomically merge fragment into payload.

        With expect_extract_status set, only applies while the stored
        payload.extract_status equals it. Returns None when nothing matched.
        """

    @abstractmethod
    async def update_fields(self, token: str, **fields: Any) -> Optional[Case]:
        pass

    @abstractmethod
    async def list_by_extract_status(self, status: str, limit: int = 100) -> List[Case]:
        pass

    @abstractmethod
    async def count_by_extract_status(self) -> Dict[str, int]:
        pass

    @abstractmethod
    async def append_event(self, event: CaseEvent) -> bool:
        """Append an event. Returns False if external_id was already recorded."""

    @abstractmethod
    async def has_event(self, external_id: str) -> bool:
        pass

    @abstractmethod
    async def list_events(self, token: str, limit: int = 100) -> List[CaseEvent]:
        """The newest `limit` events for token, oldest first."""


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update case fields: {sorted(unknown)}")


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryCaseStore(CaseStore):
    """Process-local store with the same contract as PostgresCaseStore."""

    def __init__(self):
        self._cases: Dict[str, Case] = {}
        self._events: List[CaseEvent] = []
        self._external_ids: set = set()
        self._lock = asyncio.Lock()

        # Visibility-lag / failure simulation
        self._hidden_reads: Dict[str, int] = {}
        self._failing_reads = 0
        self.read_calls = 0

    def simulate_visibility_lag(self, token: str, reads: int) -> None:
        """Make the next `reads` point lookups of token miss."""
        self._hidden_reads[token] = reads

    def simulate_read_errors(self, reads: int) -> None:
        self._failing_reads = reads

    def _snapshot(self, case: Optional[Case]) -> Optional[Case]:
        return case.model_copy(deep=True) if case else None

    async def get_by_token(self, token: str) -> Optional[Case]:
        async with self._lock:
            self.read_calls += 1
            if self._failing_reads > 0:
                self._failing_reads -= 1
                raise ConnectionError("simulated store read failure")
            hidden = self._hidden_reads.get(token, 0)
            if hidden > 0:
                self._hidden_reads[token] = hidden - 1
                return None
            return self._snapshot(self._cases.get(token))

    async def upsert_merge(self, token: str, fragment: Dict[str, Any]) -> Tuple[Case, bool]:
        async with self._lock:
            existing = self._cases.get(token)
            if existing is None:
                case = Case(token=token, payload=copy.deepcopy(fragment))
                self._cases[token] = case
                return self._snapshot(case), True

            existing.payload = {**existing.payload, **copy.deepcopy(fragment)}
            existing.updated_at = utcnow()
            return self._snapshot(existing), False

    async def merge_payload(
        self,
        token: str,
        fragment: Dict[str, Any],
        expect_extract_status: Optional[str] = None,
    ) -> Optional[Case]:
        async with self._lock:
            existing = self._cases.get(token)
            if existing is None:
                return None
            if (
                expect_extract_status is not None
                and existing.payload.get("extract_status") != expect_extract_status
            ):
                return None
            existing.payload = {**existing.payload, **copy.deepcopy(fragment)}
            existing.updated_at = utcnow()
            return self._snapshot(existing)

    async def update_fields(self, token: str, **fields: Any) -> Optional[Case]:
        _check_fields(fields)
        async with self._lock:
            existing = self._cases.get(token)
            if existing is None:
                return None
            for key, value in fields.items():
                setattr(existing, key, value)
            existing.updated_at = utcnow()
            return self._snapshot(existing)

    async def list_by_extract_status(self, status: str, limit: int = 100) -> List[Case]:
        async with self._lock:
            matches = [c for c in self._cases.values() if c.payload.get("extract_status") == status]
            matches.sort(key=lambda c: c.updated_at)
            return [self._snapshot(c) for c in matches[:limit]]

    async def count_by_extract_status(self) -> Dict[str, int]:
        async with self._lock:
            counts: Dict[str, int] = {}
            for case in self._cases.values():
                status = case.payload.get("extract_status")
                if status:
                    counts[status] = counts.get(status, 0) + 1
            return counts

    async def append_event(self, event: CaseEvent) -> bool:
        async with self._lock:
            if event.external_id is not None:
                if event.external_id in self._external_ids:
                    return False
                self._external_ids.add(event.external_id)
            self._events.append(event.model_copy(deep=True))
            return True

    async def has_event(self, external_id: str) -> bool:
        async with self._lock:
            return external_id in self._external_ids

    async def list_events(self, token: str, limit: int = 100) -> List[CaseEvent]:
        async with self._lock:
            events = [e for e in self._events if e.token == token]
            recent = events[-limit:] if limit > 0 else []
            return [e.model_copy(deep=True) for e in recent]


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS cases (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        token TEXT NOT NULL UNIQUE,
        email TEXT,
        status VARCHAR(20) NOT NULL DEFAULT 'new',
        unlocked BOOLEAN NOT NULL DEFAULT FALSE,
        payload JSONB NOT NULL DEFAULT '{}',
        stripe_checkout_session_id TEXT,
        stripe_payment_intent_id TEXT,
        amount_total INTEGER,
        currency VARCHAR(10),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Append-only audit log; external_id dedupes gateway redeliveries
    """
    CREATE TABLE IF NOT EXISTS case_events (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        token TEXT NOT NULL,
        type VARCHAR(50) NOT NULL,
        data JSONB NOT NULL DEFAULT '{}',
        external_id TEXT UNIQUE,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    "CREATE INDEX IF NOT EXISTS idx_cases_created ON cases(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_cases_extract_status ON cases((payload->>'extract_status'))",
    "CREATE INDEX IF NOT EXISTS idx_case_events_token ON case_events(token)",
    "CREATE INDEX IF NOT EXISTS idx_case_events_timestamp ON case_events(timestamp DESC)",
]


class Database:
    """Async connection pool manager"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize the connection pool and run migrations"""
        if self._pool:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.settings.database_url,
                min_size=self.settings.db_min_pool_size,
                max_size=self.settings.db_max_pool_size,
            )
            logger.info("database_pool_initialized")
            await self._run_migrations()
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    async def close(self):
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        if not self._pool:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _run_migrations(self):
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except Exception as e:
                    if "already exists" not in str(e):
                        logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete")


def _load_json(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _row_to_case(row: asyncpg.Record) -> Case:
    result = dict(row)
    return Case(
        id=str(result["id"]),
        token=result["token"],
        email=result.get("email"),
        status=result["status"],
        unlocked=result["unlocked"],
        payload=_load_json(result.get("payload")),
        stripe_checkout_session_id=result.get("stripe_checkout_session_id"),
        stripe_payment_intent_id=result.get("stripe_payment_intent_id"),
        amount_total=result.get("amount_total"),
        currency=result.get("currency"),
        created_at=result["created_at"],
        updated_at=result["updated_at"],
    )


def _row_to_event(row: asyncpg.Record) -> CaseEvent:
    result = dict(row)
    return CaseEvent(
        id=str(result["id"]),
        token=result["token"],
        type=CaseEventType(result["type"]),
        data=_load_json(result.get("data")),
        external_id=result.get("external_id"),
        timestamp=result["timestamp"],
    )


class PostgresCaseStore(CaseStore):
    """CaseStore over the `cases` / `case_events` tables."""

    def __init__(self, database: Database):
        self.db = database

    async def initialize(self) -> None:
        await self.db.initialize()

    async def close(self) -> None:
        await self.db.close()

    async def get_by_token(self, token: str) -> Optional[Case]:
        row = await self.db.fetch_one("SELECT * FROM cases WHERE token = $1", token)
        return _row_to_case(row) if row else None

    async def upsert_merge(self, token: str, fragment: Dict[str, Any]) -> Tuple[Case, bool]:
        row = await self.db.fetch_one(
            """
            INSERT INTO cases (token, payload, status, unlocked)
            VALUES ($1, $2::jsonb, 'new', FALSE)
            ON CONFLICT (token) DO UPDATE
                SET payload = cases.payload || EXCLUDED.payload,
                    updated_at = NOW()
            RETURNING *, (xmax = 0) AS inserted
            """,
            token,
            json.dumps(fragment),
        )
        return _row_to_case(row), bool(row["inserted"])

    async def merge_payload(
        self,
        token: str,
        fragment: Dict[str, Any],
        expect_extract_status: Optional[str] = None,
    ) -> Optional[Case]:
        if expect_extract_status is None:
            row = await self.db.fetch_one(
                """
                UPDATE cases
                SET payload = payload || $2::jsonb, updated_at = NOW()
                WHERE token = $1
                RETURNING *
                """,
                token,
                json.dumps(fragment),
            )
        else:
            row = await self.db.fetch_one(
                """
                UPDATE cases
                SET payload = payload || $2::jsonb, updated_at = NOW()
                WHERE token = $1 AND payload->>'extract_status' = $3
                RETURNING *
                """,
                token,
                json.dumps(fragment),
                expect_extract_status,
            )
        return _row_to_case(row) if row else None

    async def update_fields(self, token: str, **fields: Any) -> Optional[Case]:
        _check_fields(fields)
        if not fields:
            return await self.get_by_token(token)

        set_clauses = ["updated_at = NOW()"]
        params: List[Any] = []
        for key, value in fields.items():
            params.append(value.value if hasattr(value, "value") else value)
            set_clauses.append(f"{key} = ${len(params)}")
        params.append(token)

        row = await self.db.fetch_one(
            f"""
            UPDATE cases
            SET {', '.join(set_clauses)}
            WHERE token = ${len(params)}
            RETURNING *
            """,
            *params,
        )
        return _row_to_case(row) if row else None

    async def list_by_extract_status(self, status: str, limit: int = 100) -> List[Case]:
        rows = await self.db.fetch_all(
            """
            SELECT * FROM cases
            WHERE payload->>'extract_status' = $1
            ORDER BY updated_at ASC
            LIMIT $2
            """,
            status,
            limit,
        )
        return [_row_to_case(row) for row in rows]

    async def count_by_extract_status(self) -> Dict[str, int]:
        rows = await self.db.fetch_all(
            """
            SELECT payload->>'extract_status' AS status, COUNT(*) AS count
            FROM cases
            WHERE payload ? 'extract_status'
            GROUP BY 1
            """
        )
        return {row["status"]: row["count"] for row in rows if row["status"]}

    async def append_event(self, event: CaseEvent) -> bool:
        result = await self.db.execute(
            """
            INSERT INTO case_events (id, token, type, data, external_id, timestamp)
            VALUES ($1, $2, $3, $4::jsonb, $5, $6)
            ON CONFLICT (external_id) DO NOTHING
            """,
            event.id,
            event.token,
            event.type.value,
            json.dumps(event.data, default=_json_default),
            event.external_id,
            event.timestamp,
        )
        return result.endswith(" 1")

    async def has_event(self, external_id: str) -> bool:
        row = await self.db.fetch_one(
            "SELECT 1 FROM case_events WHERE external_id = $1",
            external_id,
        )
        return row is not None

    async def list_events(self, token: str, limit: int = 100) -> List[CaseEvent]:
        rows = await self.db.fetch_all(
            """
            SELECT * FROM (
                SELECT * FROM case_events
                WHERE token = $1
                ORDER BY timestamp DESC
                LIMIT $2
            ) AS recent
            ORDER BY timestamp ASC
            """,
            token,
            limit,
        )
        return [_row_to_event(row) for row in rows]


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


# =============================================================================
# INITIALIZATION
# =============================================================================

def create_store(settings: Settings) -> CaseStore:
    """Postgres when DATABASE_URL is configured, in-memory otherwise."""
    if settings.database_url:
        return PostgresCaseStore(Database(settings))

    logger.warning("database_url_missing", fallback="in_memory")
    return InMemoryCaseStore()
