"""
Usage metering and quota admission for generative backend spend.

This module provides the UsageStore interface for per-classroom monthly counters,
three concrete stores, a QuotaStore for configured ceilings, and the QuotaMeter
that the step orchestrator talks to.

Included usage stores:
1. InMemoryUsageStore - Dict-based counters, lost on exit (testing, single process)
2. JsonUsageStore - One JSON file per classroom (small deployments, easy inspection)
3. PostgresUsageStore - Single-statement atomic upsert (production, multi-process)

Units:
- Cost is tracked in micro-USD (integers)
- Quotas are configured in cents; 1 cent = 10,000 micro-USD

Concurrency:
``admit`` reads and ``record`` increments; they are two separate operations.
Two concurrent steps for one classroom can both be admitted before either
records, so usage can overshoot the quota by at most the number of in-flight
steps times one step's cost. ``increment`` itself is atomic in every store, so
no delta is ever lost or applied twice. A hard cap needs a conditional
add-then-compare update in the store.

Usage pattern:
    meter = QuotaMeter(InMemoryUsageStore(), StaticQuotaStore({}, default_cents=500), pricing)
    admission = await meter.admit("class-1")
    if admission.allowed:
        ...
        await meter.record("class-1", meter.delta_for(tokens_in, tokens_out))
"""

import asyncio
import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional
from urllib.parse import quote

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Config
from .errors import MeteringError
from .schemas import UsageDelta, UsageRow

try:  # Optional dependency (only needed for PostgresUsageStore)
    import asyncpg
except ImportError:  # pragma: no cover - asyncpg may not be installed for json/memory usage
    asyncpg = None


MICRO_USD_PER_CENT = 10_000


def month_key(now: Optional[datetime] = None) -> str:
    """Calendar month key in UTC, e.g. ``2026-10``."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"{now.year:04d}-{now.month:02d}"


def cents_to_micro_usd(cents: int) -> int:
    return int(cents) * MICRO_USD_PER_CENT


# ============================================================================
# Pricing
# ============================================================================


@dataclass(frozen=True)
class Pricing:
    """Per-token prices in micro-USD."""

    price_in: float
    price_out: float

    def cost(self, tokens_in: int, tokens_out: int) -> int:
        """Cost of one call in micro-USD, rounded up and never negative."""
        raw = tokens_in * self.price_in + tokens_out * self.price_out
        if not math.isfinite(raw) or raw <= 0:
            return 0
        return math.ceil(raw)


# ============================================================================
# Usage stores
# ============================================================================


class UsageStore(ABC):
    """Abstract base class for per-classroom monthly usage counters.

    Method categories:
    1. Lifecycle: initialize(), close()
    2. Counters: get(), increment()

    ``increment`` must be atomic with respect to concurrent increments for the
    same (classroom, month) key and must create the counter when absent.
    Counters are never deleted.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Open connections, create directories, etc."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections and file handles."""
        pass

    @abstractmethod
    async def get(self, classroom_id: str, month: str) -> UsageRow:
        """
        Read the counter for a classroom and month.

        Returns:
            UsageRow (all zeros if the counter does not exist yet)
        """
        pass

    @abstractmethod
    async def increment(self, classroom_id: str, month: str, delta: UsageDelta) -> UsageRow:
        """
        Atomically add ``delta`` to the counter, creating it if absent.

        Returns:
            The counter as it stands right after this increment

        Raises:
            Exception: If the write fails
        """
        pass


class InMemoryUsageStore(UsageStore):
    """In-memory counters keyed by (classroom_id, month).

    Data is ephemeral. An asyncio.Lock serializes increments, which is enough
    for any number of concurrent steps inside one event loop.
    """

    def __init__(self) -> None:
        self.rows: Dict[tuple[str, str], UsageRow] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        # Counters are kept so callers can inspect them after shutdown.
        pass

    async def get(self, classroom_id: str, month: str) -> UsageRow:
        row = self.rows.get((classroom_id, month))
        return row.model_copy() if row is not None else UsageRow()

    async def increment(self, classroom_id: str, month: str, delta: UsageDelta) -> UsageRow:
        async with self._lock:
            key = (classroom_id, month)
            updated = self.rows.get(key, UsageRow()).plus(delta)
            self.rows[key] = updated
            return updated.model_copy()


class JsonUsageStore(UsageStore):
    """File-based counters: one JSON file per classroom.

    Directory structure:
    ```
    {base_path}/
      {quote(classroom_id)}.json     # {"2026-09": {...UsageRow}, "2026-10": {...}}
    ```

    Increments are serialized by an in-process lock and written via a temp
    file + rename so a crash never leaves a half-written file. Not safe for
    multiple processes sharing one directory.
    """

    def __init__(self, base_path: Path | str | None = None) -> None:
        self.base_path = Path(base_path) if base_path is not None else Config.USAGE_DIR
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        await asyncio.to_thread(self.base_path.mkdir, parents=True, exist_ok=True)

    async def close(self) -> None:
        return None

    def _path(self, classroom_id: str) -> Path:
        # Percent-encoding is reversible, so distinct ids never share a file.
        return self.base_path / f"{quote(classroom_id, safe='')}.json"

    def _read(self, path: Path) -> Dict[str, dict]:
        if not path.exists():
            return {}
        return json.loads(path.read_text("utf-8"))

    async def get(self, classroom_id: str, month: str) -> UsageRow:
        payload = await asyncio.to_thread(self._read, self._path(classroom_id))
        row = payload.get(month)
        return UsageRow.model_validate(row) if row else UsageRow()

    async def increment(self, classroom_id: str, month: str, delta: UsageDelta) -> UsageRow:
        path = self._path(classroom_id)

        def _update() -> UsageRow:
            payload = self._read(path)
            current = UsageRow.model_validate(payload[month]) if month in payload else UsageRow()
            updated = current.plus(delta)
            payload[month] = updated.model_dump(by_alias=True)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), "utf-8")
            tmp_path.replace(path)
            return updated

        async with self._lock:
            return await asyncio.to_thread(_update)


class PostgresUsageStore(UsageStore):
    """PostgreSQL-backed counters.

    Schema:
    ```sql
    CREATE TABLE IF NOT EXISTS usage_counters (
        classroom_id   TEXT   NOT NULL,
        month          TEXT   NOT NULL,
        requests       BIGINT NOT NULL DEFAULT 0,
        tokens_in      BIGINT NOT NULL DEFAULT 0,
        tokens_out     BIGINT NOT NULL DEFAULT 0,
        cost_micro_usd BIGINT NOT NULL DEFAULT 0,
        PRIMARY KEY (classroom_id, month)
    );
    ```

    ``increment`` is one INSERT ... ON CONFLICT DO UPDATE statement, so
    concurrent writers from any number of processes never lose a delta.
    """

    CREATE_TABLE = """
        CREATE TABLE IF NOT EXISTS usage_counters (
            classroom_id   TEXT   NOT NULL,
            month          TEXT   NOT NULL,
            requests       BIGINT NOT NULL DEFAULT 0,
            tokens_in      BIGINT NOT NULL DEFAULT 0,
            tokens_out     BIGINT NOT NULL DEFAULT 0,
            cost_micro_usd BIGINT NOT NULL DEFAULT 0,
            PRIMARY KEY (classroom_id, month)
        )
    """

    def __init__(self, database_url: Optional[str] = None, connect_attempts: int = 3):
        if asyncpg is None:  # pragma: no cover - handled during runtime when dependency missing
            raise ImportError(
                "asyncpg is required for PostgresUsageStore. Install with `pip install freelab[postgres]`."
            )

        self.database_url = database_url or Config.DATABASE_URL
        self.connect_attempts = connect_attempts
        self.pool: Optional["asyncpg.Pool"] = None

    async def initialize(self) -> None:
        if self.pool is not None:
            return
        # The database may still be starting when the service boots.
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((OSError, asyncpg.CannotConnectNowError)),
            stop=stop_after_attempt(self.connect_attempts),
            wait=wait_exponential(multiplier=0.5, max=5),
            reraise=True,
        ):
            with attempt:
                self.pool = await asyncpg.create_pool(self.database_url)
        async with self.pool.acquire() as conn:
            await conn.execute(self.CREATE_TABLE)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    def _require_pool(self) -> "asyncpg.Pool":
        if self.pool is None:
            raise RuntimeError("PostgresUsageStore used before initialize()")
        return self.pool

    @staticmethod
    def _row_to_usage(row) -> UsageRow:
        return UsageRow(
            requests=row["requests"],
            tokens_in=row["tokens_in"],
            tokens_out=row["tokens_out"],
            cost_micro_usd=row["cost_micro_usd"],
        )

    async def get(self, classroom_id: str, month: str) -> UsageRow:
        pool = self._require_pool()

        query = """
            SELECT requests, tokens_in, tokens_out, cost_micro_usd
            FROM usage_counters
            WHERE classroom_id = $1 AND month = $2
        """

        async with pool.acquire() as conn:
            row = await conn.fetchrow(query, classroom_id, month)

        return self._row_to_usage(row) if row else UsageRow()

    async def increment(self, classroom_id: str, month: str, delta: UsageDelta) -> UsageRow:
        pool = self._require_pool()

        query = """
            INSERT INTO usage_counters (classroom_id, month, requests, tokens_in, tokens_out, cost_micro_usd)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (classroom_id, month) DO UPDATE
            SET requests = usage_counters.requests + EXCLUDED.requests,
                tokens_in = usage_counters.tokens_in + EXCLUDED.tokens_in,
                tokens_out = usage_counters.tokens_out + EXCLUDED.tokens_out,
                cost_micro_usd = usage_counters.cost_micro_usd + EXCLUDED.cost_micro_usd
            RETURNING requests, tokens_in, tokens_out, cost_micro_usd
        """

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                classroom_id,
                month,
                delta.requests,
                delta.tokens_in,
                delta.tokens_out,
                delta.cost_micro_usd,
            )
        return self._row_to_usage(row)


# ============================================================================
# Quota configuration
# ============================================================================


class QuotaStore(ABC):
    """Read-only source of per-classroom monthly quotas (in cents)."""

    @abstractmethod
    async def get_quota(self, classroom_id: str) -> Optional[int]:
        """Return the classroom's quota in cents, or None when not configured."""
        pass


class StaticQuotaStore(QuotaStore):
    """Quotas from a mapping, with a default for classrooms not listed."""

    def __init__(self, quotas: Optional[Mapping[str, int]] = None, default_cents: Optional[int] = None):
        self.quotas: Dict[str, int] = dict(quotas or {})
        self.default_cents = default_cents

    async def get_quota(self, classroom_id: str) -> Optional[int]:
        return self.quotas.get(classroom_id, self.default_cents)


# ============================================================================
# Quota meter
# ============================================================================


@dataclass(frozen=True)
class Admission:
    """Result of a pre-flight quota check. ``quota`` is in micro-USD."""

    allowed: bool
    usage: UsageRow
    quota: int
    month: str

    def snapshot(self) -> Dict[str, int]:
        return self.usage.model_dump(by_alias=True)


class QuotaMeter:
    """Admission check and usage recording for one deployment.

    The only component that reads or writes usage counters.
    """

    def __init__(
        self,
        usage_store: UsageStore,
        quota_store: QuotaStore,
        pricing: Optional[Pricing] = None,
        *,
        default_quota_cents: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.usage_store = usage_store
        self.quota_store = quota_store
        self.pricing = pricing or Config.pricing()
        self.default_quota_cents = (
            Config.DEFAULT_QUOTA_CENTS if default_quota_cents is None else default_quota_cents
        )
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def current_month(self) -> str:
        return month_key(self.clock())

    def delta_for(self, tokens_in: int, tokens_out: int) -> UsageDelta:
        """Usage delta for one completed backend call."""
        return UsageDelta(
            requests=1,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_micro_usd=self.pricing.cost(tokens_in, tokens_out),
        )

    async def admit(self, classroom_id: str) -> Admission:
        """Compare this month's spend with the classroom's quota. Read-only.

        Raises:
            MeteringError: If the usage or quota store cannot be read
        """
        month = self.current_month()
        try:
            usage = await self.usage_store.get(classroom_id, month)
            quota_cents = await self.quota_store.get_quota(classroom_id)
        except Exception as exc:
            raise MeteringError(classroom_id=classroom_id, operation="read", underlying=exc) from exc

        if quota_cents is None:
            quota_cents = self.default_quota_cents
        quota = cents_to_micro_usd(quota_cents)
        return Admission(
            allowed=usage.cost_micro_usd < quota,
            usage=usage,
            quota=quota,
            month=month,
        )

    async def record(self, classroom_id: str, delta: UsageDelta, *, month: Optional[str] = None) -> UsageRow:
        """Add ``delta`` to this month's counter.

        Returns:
            The counter right after the increment, including concurrent steps
            that recorded first

        Raises:
            MeteringError: If the write fails; never swallowed
        """
        month = month or self.current_month()
        try:
            return await self.usage_store.increment(classroom_id, month, delta)
        except Exception as exc:
            raise MeteringError(classroom_id=classroom_id, operation="write", underlying=exc) from exc


__all__ = [
    "MICRO_USD_PER_CENT",
    "Admission",
    "InMemoryUsageStore",
    "JsonUsageStore",
    "PostgresUsageStore",
    "Pricing",
    "QuotaMeter",
    "QuotaStore",
    "StaticQuotaStore",
    "UsageStore",
    "cents_to_micro_usd",
    "month_key",
]
