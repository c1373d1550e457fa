import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from query_agent.core.cancellation import AbortSignal
from query_agent.core.errors import QueryExecutionError
from query_agent.core.observability import TraceManager, log_tool_call
from query_agent.core.sql_guard import GuardViolation, guard_sql
from query_agent.services.query_executor import QueryExecutor, SqlExecutionResult
from query_agent.services.schema import ALLOWED_TABLES, SchemaService

EXECUTE_SQL = "execute_sql"
DESCRIBE_SCHEMA = "describe_schema"

TIMEOUT_MESSAGE = "Query execution timed out. Please try a simpler query."
DB_ERROR_MESSAGE = "Error executing query: Database error occurred. Please try again or simplify your query."


def get_tool_schemas(max_rows: int = 100) -> List[Dict[str, Any]]:
    """OpenAI function-calling definitions, accepted as-is by `bind_tools`."""
    tables = ", ".join(ALLOWED_TABLES)
    return [
        {
            "type": "function",
            "function": {
                "name": EXECUTE_SQL,
                "description": (
                    "Execute a SQL SELECT query to retrieve data from the database. Only SELECT queries "
                    f"are allowed. Results are limited to {max_rows} rows. Tenant scoping is enforced. "
                    "Use this when the user asks for specific data or statistics. You can call this "
                    "function multiple times (up to the limit) for multi-step analysis."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "query": {
                            "type": "string",
                            "description": (
                                f"The SQL SELECT query to execute. Must be SELECT-only. Allowed tables: {tables}. "
                                f"Results are limited to {max_rows} rows. Use aggregates (COUNT, SUM, etc.) "
                                "in SQL if you need summary statistics."
                            ),
                        },
                    },
                    "required": ["query"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": DESCRIBE_SCHEMA,
                "description": (
                    "Get the schema (available tables and columns) for the database. Use this if you're "
                    "unsure about column names or need to understand the database structure before writing queries."
                ),
                "parameters": {"type": "object", "properties": {}, "required": []},
            },
        },
    ]


@dataclass
class ToolOutcome:
    output: str
    result: Optional[SqlExecutionResult] = None


class ToolRunner:
    """Executes model tool calls for one tenant. Failures come back as tool output, aborts propagate."""

    def __init__(self, executor: QueryExecutor, tenant_id: Optional[str]):
        self.executor = executor
        self.tenant_id = tenant_id

    @TraceManager.span("tool_call")
    async def run(
        self,
        name: str,
        arguments: Union[str, Dict[str, Any], None],
        signal: Optional[AbortSignal] = None,
    ) -> ToolOutcome:
        if name == DESCRIBE_SCHEMA:
            return await self.describe_schema()
        if name != EXECUTE_SQL:
            return ToolOutcome(f"Unknown tool: {name}")

        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                return ToolOutcome("Query validation failed: Invalid tool arguments")
        if arguments is not None and not isinstance(arguments, dict):
            return ToolOutcome("Query validation failed: Invalid tool arguments")
        query = (arguments or {}).get("query") or ""
        return await self.execute_sql(query, signal)

    async def describe_schema(self) -> ToolOutcome:
        start = time.perf_counter()
        output = SchemaService.describe_schema()
        log_tool_call(
            tool_name=DESCRIBE_SCHEMA,
            tenant_id=self.tenant_id,
            duration_ms=(time.perf_counter() - start) * 1000,
            success=True,
            allow_deny_reason="allowed",
        )
        return ToolOutcome(output)

    async def execute_sql(self, sql: str, signal: Optional[AbortSignal] = None) -> ToolOutcome:
        start = time.perf_counter()

        def elapsed():
            return (time.perf_counter() - start) * 1000

        try:
            guarded = guard_sql(
                sql,
                max_rows=self.executor.max_rows,
                expected_tenant_id=self.executor.scope_tenant(self.tenant_id),
            )
        except GuardViolation as e:
            log_tool_call(
                tool_name=EXECUTE_SQL, tenant_id=self.tenant_id, duration_ms=elapsed(),
                success=False, sql=sql, allow_deny_reason=e.code, error=e,
            )
            return ToolOutcome(f"Query validation failed: {e.message}")

        try:
            result = await self.executor.execute(guarded, self.tenant_id, signal)
        except QueryExecutionError as e:
            log_tool_call(
                tool_name=EXECUTE_SQL, tenant_id=self.tenant_id, duration_ms=elapsed(),
                success=False, sql=guarded.sql, allow_deny_reason="allowed", error=e,
            )
            return ToolOutcome(TIMEOUT_MESSAGE if e.code == "TIMEOUT" else DB_ERROR_MESSAGE)

        log_tool_call(
            tool_name=EXECUTE_SQL, tenant_id=self.tenant_id, duration_ms=elapsed(),
            success=True, sql=guarded.sql, allow_deny_reason="allowed", rows_returned=result.row_count,
        )
        return ToolOutcome(result.summary, result)
