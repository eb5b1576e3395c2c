"""Databricks SQL warehouse tools.

``run_sql`` executes a statement on a warehouse selected either by size
(``2xs``/``xs``/``s``) or by explicit id, never both. Results come back as a
size-bounded structured payload behind ``SQL_RESULT_MARKER`` so clients can
render a table instead of raw text.
"""

from __future__ import annotations

import asyncio
import datetime
import decimal
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

import httpx
from claude_agent_sdk import SdkMcpTool, tool

from codebox.config import WAREHOUSE_SIZES, DatabricksConfig

logger = logging.getLogger(__name__)

MAX_ROWS_DEFAULT = 1000
MAX_ROWS_LIMIT = 10000
DEFAULT_SIZE = "2xs"
SQL_RESULT_MARKER = "<!--SQL_RESULT-->"
FETCH_BATCH = 1000


class SQLToolError(Exception):
    """SQL backend or REST API failure."""


class SQLValidationError(SQLToolError, ValueError):
    """Invalid tool input, raised before any connection attempt."""


@dataclass
class WarehouseCredentials:
    """Host and bearer credential for one authenticated user."""

    host: str
    token: str
    warehouse_ids: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: DatabricksConfig) -> "WarehouseCredentials":
        return cls(host=config.host, token=config.token, warehouse_ids=dict(config.warehouse_ids))

    def require(self) -> None:
        if not self.token:
            raise SQLToolError("DATABRICKS_TOKEN not available. User authentication required.")
        if not self.host:
            raise SQLToolError("DATABRICKS_HOST not configured.")


def resolve_warehouse_id(
    credentials: WarehouseCredentials,
    size: str | None = None,
    warehouse_id: str | None = None,
) -> str:
    """Pick the warehouse id from an explicit id or a configured size."""
    if size and warehouse_id:
        raise SQLValidationError('Cannot specify both "size" and "warehouse_id". Use one or the other.')
    if warehouse_id:
        return warehouse_id
    size = size or DEFAULT_SIZE
    if size not in WAREHOUSE_SIZES:
        raise SQLValidationError(f"Invalid size {size!r}. Expected one of: {', '.join(WAREHOUSE_SIZES)}")
    resolved = credentials.warehouse_ids.get(size)
    if not resolved:
        raise SQLToolError(f"WAREHOUSE_ID_{size.upper()} not configured")
    return resolved


def clamp_max_rows(value: Any) -> int:
    """Validate ``max_rows`` and cap it at ``MAX_ROWS_LIMIT``."""
    if value is None:
        return MAX_ROWS_DEFAULT
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != int(value):
        raise SQLValidationError(f"max_rows must be an integer, got {value!r}")
    if value < 1:
        raise SQLValidationError("max_rows must be at least 1")
    return min(int(value), MAX_ROWS_LIMIT)


def serialize_value(value: Any) -> Any:
    """Make a cell JSON-safe; anything non-scalar becomes a string."""
    if value is None:
        return None
    if isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        # NaN/inf are not valid JSON
        return value if value == value and value not in (float("inf"), float("-inf")) else str(value)
    if isinstance(value, (datetime.date, datetime.time, decimal.Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    if hasattr(value, "tolist"):
        # numpy / pyarrow arrays from complex column types
        return json.dumps(value.tolist(), default=str)
    return str(value)


def format_query_result(columns: list[str], rows: Iterable[Iterable[Any]], max_rows: int) -> str:
    """Build the marker-prefixed JSON payload from at most ``max_rows`` rows.

    Rows past the cap are counted but not kept.
    """
    kept: list[list[Any]] = []
    total = 0
    for row in rows:
        total += 1
        if total <= max_rows:
            kept.append([serialize_value(v) for v in row])

    if total == 0:
        return "Query executed successfully. No rows returned."

    payload = {
        "columns": columns,
        "rows": kept,
        "totalRows": total,
        "truncated": total > max_rows,
    }
    return SQL_RESULT_MARKER + json.dumps(payload)


def _default_connect(host: str, http_path: str, token: str):
    from databricks import sql as dbsql

    return dbsql.connect(server_hostname=host, http_path=http_path, access_token=token)


def _iter_cursor(cursor) -> Iterable[Any]:
    while True:
        batch = cursor.fetchmany(FETCH_BATCH)
        if not batch:
            return
        yield from batch


def _close_quietly(resource, label: str) -> None:
    if resource is None:
        return
    try:
        resource.close()
    except Exception as e:
        logger.warning("Failed to close SQL %s: %s", label, e)


def execute_query(
    query: str,
    warehouse_id: str,
    max_rows: int,
    credentials: WarehouseCredentials,
    connect: Callable[..., Any] | None = None,
) -> str:
    """Run one statement and format the result (blocking).

    Cursor and connection are closed on every path; closing the cursor
    cancels a statement that is still running server-side.
    """
    credentials.require()
    connect = connect or _default_connect
    connection = None
    cursor = None
    try:
        connection = connect(
            host=credentials.host,
            http_path=f"/sql/1.0/warehouses/{warehouse_id}",
            token=credentials.token,
        )
        cursor = connection.cursor()
        cursor.execute(query)
        if not cursor.description:
            return "Query executed successfully. No rows returned."
        columns = [str(col[0]) for col in cursor.description]
        return format_query_result(columns, _iter_cursor(cursor), max_rows)
    except Exception as e:
        raise SQLToolError(f"SQL execution failed: {e}") from e
    finally:
        _close_quietly(cursor, "cursor")
        _close_quietly(connection, "connection")


async def _warehouse_api_get(
    credentials: WarehouseCredentials,
    path: str,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    credentials.require()
    url = f"https://{credentials.host}/api/2.0/sql/warehouses{path}"
    headers = {
        "Authorization": f"Bearer {credentials.token}",
        "Content-Type": "application/json",
    }
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        response = await client.get(url, headers=headers)
    if response.status_code >= 400:
        raise SQLToolError(f"API request failed: {response.status_code} {response.text}")
    return json.dumps(response.json(), indent=2)


def create_sql_tools(
    credentials: WarehouseCredentials,
    *,
    http_timeout: float = 30.0,
    connect: Callable[..., Any] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[SdkMcpTool]:
    """Build the warehouse tools for one user's credentials.

    ``connect`` and ``transport`` replace the SQL driver and HTTP transport.
    """

    @tool(
        "run_sql",
        "Execute SQL on Databricks SQL Warehouse. Supports SELECT, DDL (CREATE/DROP/ALTER), "
        "and DML (INSERT/UPDATE/DELETE). Results are returned as structured rows. "
        'Use "size" parameter to select warehouse (recommended). '
        'Only use "warehouse_id" for advanced cases.',
        {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "SQL statement to execute"},
                "size": {
                    "type": "string",
                    "enum": list(WAREHOUSE_SIZES),
                    "description": "Warehouse size: 2xs, xs, or s (default: 2xs). Cannot be used with warehouse_id.",
                },
                "warehouse_id": {
                    "type": "string",
                    "description": "Direct warehouse ID. Only use this for advanced cases. Cannot be used with size.",
                },
                "max_rows": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": MAX_ROWS_LIMIT,
                    "description": f"Max rows to return (default: {MAX_ROWS_DEFAULT})",
                },
            },
            "required": ["query"],
        },
    )
    async def run_sql(args: dict) -> dict:
        query = args.get("query")
        if not isinstance(query, str) or not query.strip():
            raise SQLValidationError("Missing 'query'")
        warehouse_id = resolve_warehouse_id(credentials, args.get("size"), args.get("warehouse_id"))
        max_rows = clamp_max_rows(args.get("max_rows"))
        text = await asyncio.to_thread(
            execute_query, query, warehouse_id, max_rows, credentials, connect
        )
        return {"content": [{"type": "text", "text": text}]}

    @tool(
        "get_warehouse_info",
        "Get information about a Databricks SQL Warehouse including its state, size, and configuration.",
        {
            "type": "object",
            "properties": {
                "size": {
                    "type": "string",
                    "enum": list(WAREHOUSE_SIZES),
                    "description": "Warehouse size: 2xs (default), xs, or s",
                },
            },
        },
    )
    async def get_warehouse_info(args: dict) -> dict:
        warehouse_id = resolve_warehouse_id(credentials, args.get("size"))
        text = await _warehouse_api_get(credentials, f"/{warehouse_id}", http_timeout, transport)
        return {"content": [{"type": "text", "text": text}]}

    @tool(
        "list_warehouses",
        "List all Databricks SQL Warehouses available in the workspace.",
        {"type": "object", "properties": {}},
    )
    async def list_warehouses(args: dict) -> dict:
        text = await _warehouse_api_get(credentials, "", http_timeout, transport)
        return {"content": [{"type": "text", "text": text}]}

    return [run_sql, get_warehouse_info, list_warehouses]
