import asyncio
import datetime
import decimal
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from query_agent.core.cancellation import AbortSignal
from query_agent.core.concurrency import ConcurrencyLimiter
from query_agent.core.errors import AbortError, QueryExecutionError
from query_agent.core.observability import hash_tenant_id
from query_agent.core.sql_guard import GuardedSQL
from query_agent.db.mock_store import seed_mock_database
from query_agent.db.session import create_mock_engine, create_session_factory

logger = logging.getLogger(__name__)

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")

FULL_RESULT_ROWS = 5
PREVIEW_ROWS = 3


class QueryStore(ABC):
    """Anything that can run one guarded SELECT and hand back plain dict rows."""

    @abstractmethod
    async def fetch(self, sql: str) -> List[Dict[str, Any]]:
        pass

    async def close(self):
        pass


class SqlAlchemyStore(QueryStore):
    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)

    async def fetch(self, sql: str) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            result = await session.execute(text(sql))
            return [dict(row) for row in result.mappings().all()]

    async def close(self):
        await self.engine.dispose()


class MockStore(SqlAlchemyStore):
    """In-memory SQLite store seeded from the bundled fixtures."""

    @classmethod
    async def create(cls, tenant_id: str) -> "MockStore":
        engine = create_mock_engine()
        await seed_mock_database(engine, tenant_id)
        return cls(engine)


@dataclass
class ColumnInfo:
    name: str
    type: str


def _infer_type(value: Any) -> str:
    # bool first, it is an int subclass
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float, decimal.Decimal)):
        return "number"
    if isinstance(value, (datetime.date, datetime.datetime)):
        return "date"
    if isinstance(value, str) and _ISO_DATE_RE.match(value):
        return "date"
    return "string"


def derive_columns(rows: List[Dict[str, Any]]) -> List[ColumnInfo]:
    if not rows:
        return []
    return [ColumnInfo(name=k, type=_infer_type(v)) for k, v in rows[0].items()]


def _json_default(value: Any):
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return float(value)
    return str(value)


def to_json_safe(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return json.loads(json.dumps(rows, default=_json_default))


@dataclass
class SqlExecutionResult:
    rows: List[Dict[str, Any]]
    columns: List[ColumnInfo] = field(default_factory=list)
    detected_tables: Tuple[str, ...] = ()
    max_rows: int = 100

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def is_tabular(self) -> bool:
        return self.row_count >= 1 and (len(self.columns) >= 2 or self.row_count > 1)

    @property
    def summary(self) -> str:
        """Model-facing rendering of the rows, bounded in size."""
        if not self.rows:
            return "The query returned no results."
        if self.row_count == 1 and len(self.columns) == 1:
            value = next(iter(self.rows[0].values()))
            return f"Result: {value}"
        if self.row_count <= FULL_RESULT_ROWS:
            return f"Found {self.row_count} result(s):\n{json.dumps(self.rows, indent=2, default=_json_default)}"
        preview = json.dumps(self.rows[:PREVIEW_ROWS], indent=2, default=_json_default)
        return (
            f"Found {self.row_count} results (showing first {PREVIEW_ROWS}):\n{preview}"
            f"\n\n(Query was limited to {self.max_rows} rows for display)"
        )


class QueryExecutor:
    """
    Runs guarded SQL against exactly one store.
    The real store path is bounded by the process-wide limiter; the mock
    store is local and never queues.
    """

    def __init__(
        self,
        store: QueryStore,
        limiter: ConcurrencyLimiter,
        timeout_ms: int = 5000,
        max_rows: int = 100,
        use_mock: bool = False,
        mock_tenant_id: Optional[str] = None,
    ):
        self.store = store
        self.limiter = limiter
        self.timeout_ms = timeout_ms
        self.max_rows = max_rows
        self.use_mock = use_mock
        self.mock_tenant_id = mock_tenant_id

    def scope_tenant(self, tenant_id: Optional[str]) -> Optional[str]:
        """Tenant id queries must filter on. Fixture data all belongs to the mock tenant."""
        if self.use_mock and self.mock_tenant_id:
            return self.mock_tenant_id
        return tenant_id

    async def _fetch(self, sql: str) -> List[Dict[str, Any]]:
        if self.use_mock:
            return await self.store.fetch(sql)
        return await self.limiter.acquire(lambda: self.store.fetch(sql))

    async def execute(
        self,
        guarded: GuardedSQL,
        tenant_id: Optional[str] = None,
        signal: Optional[AbortSignal] = None,
    ) -> SqlExecutionResult:
        work = asyncio.wait_for(self._fetch(guarded.sql), timeout=self.timeout_ms / 1000)
        try:
            if signal is not None:
                rows = await signal.race(work)
            else:
                rows = await work
        except asyncio.TimeoutError as e:
            raise QueryExecutionError("Query execution timed out", code="TIMEOUT") from e
        except AbortError:
            raise
        except Exception as e:
            logger.warning(f"Query failed ({type(e).__name__}) for tenant {hash_tenant_id(tenant_id)}")
            raise QueryExecutionError("Database error occurred", code="QUERY_FAILED") from e

        return SqlExecutionResult(
            rows=to_json_safe(rows),
            columns=derive_columns(rows),
            detected_tables=guarded.metadata.tables_used,
            max_rows=self.max_rows,
        )

    async def close(self):
        await self.store.close()
