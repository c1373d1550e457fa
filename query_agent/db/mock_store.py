import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from query_agent.services.schema import ALLOWED_COLUMNS, ALLOWED_TABLES, TENANT_COLUMN

logger = logging.getLogger(__name__)

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def load_fixture_rows(table: str) -> List[Dict[str, Any]]:
    path = FIXTURES_DIR / f"{table}.json"
    if not path.exists():
        return []
    with path.open(encoding="utf-8") as f:
        return json.load(f)


def _prepare_row(row: Dict[str, Any], columns: List[str], tenant_id: str) -> Dict[str, Any]:
    prepared = {}
    for column in columns:
        value = row.get(column)
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        prepared[column] = value
    # Fixture rows belong to the demo tenant unless they say otherwise
    if prepared.get(TENANT_COLUMN) is None:
        prepared[TENANT_COLUMN] = tenant_id
    return prepared


async def seed_mock_database(engine: AsyncEngine, tenant_id: str):
    """
    Create the allow-listed tables in the (SQLite) mock engine and load the
    JSON fixtures. Columns are declared untyped so values keep their JSON types.
    """
    async with engine.begin() as conn:
        for table in ALLOWED_TABLES:
            columns = sorted(ALLOWED_COLUMNS[table])
            quoted = ", ".join(f'"{c}"' for c in columns)
            await conn.execute(text(f'CREATE TABLE IF NOT EXISTS "{table}" ({quoted})'))

            rows = load_fixture_rows(table)
            if not rows:
                continue
            placeholders = ", ".join(f":{c}" for c in columns)
            await conn.execute(
                text(f'INSERT INTO "{table}" ({quoted}) VALUES ({placeholders})'),
                [_prepare_row(r, columns, tenant_id) for r in rows],
            )
            logger.info(f"Seeded mock table {table} with {len(rows)} rows")
