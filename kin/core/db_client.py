"""SQLite database client wrapper with CRUD operations."""

import asyncio
import json
import logging
import re
from datetime import date, datetime
from pathlib import Path
from typing import Any, NoReturn

import aiosqlite

from kin.core.config import settings


logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


class DatabaseError(Exception):
    """Raised when a database operation fails."""


class RecordNotFoundError(DatabaseError, KeyError):
    """Raised when a record does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class UniqueConstraintError(DatabaseError):
    """Raised when a write violates a unique index."""


def _validate_collection_name(collection: str) -> None:
    """Validate that a collection name contains only alphanumeric characters and underscores."""
    if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", collection):
        msg = f"Invalid collection name: {collection}. Only alphanumeric characters and underscores are allowed."
        raise ValueError(msg)


def sanitize_param(value: str | int | float | bool | None) -> str:
    """Escape a value for safe embedding in filter queries via json.dumps."""
    return json.dumps(str(value))[1:-1]


def _convert_record_ids(record: dict[str, Any]) -> dict[str, Any]:
    """Convert integer ID and foreign key fields to strings for Pydantic compatibility."""
    converted = record.copy()
    for key, value in converted.items():
        if isinstance(value, int) and (key == "id" or key.endswith("_id")):
            converted[key] = str(value)
    return converted


def _serialize_value(value: Any) -> Any:
    """Convert Python values into SQLite-storable values."""
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, dict | list):
        return json.dumps(value)
    return value


def get_db_path(db_path: str | None = None) -> Path | str:
    """Get the resolved SQLite database file path."""
    path_str = db_path or settings.sqlite_db_path
    if path_str == MEMORY_DB:
        return MEMORY_DB
    return Path(path_str).resolve()


_SQL_OPERATORS = {
    "=": "=",
    "!=": "!=",
    ">": ">",
    "<": "<",
    ">=": ">=",
    "<=": "<=",
    "~": "LIKE",
}
_FIELD_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_OPERATOR_PATTERN = re.compile(r"!=|>=|<=|=|>|<|~")


def _like_pattern(value: str) -> str:
    """Wrap a value for a substring LIKE match with its wildcards escaped."""
    escaped = value.replace("\\", "\\\\").replace("%", r"\%").replace("_", r"\_")
    return f"%{escaped}%"


def _unescape(raw: str, quote: str) -> str:
    """Decode the body of a quoted filter value.

    Double-quoted values use the JSON escapes produced by sanitize_param;
    single-quoted values only escape the next character with a backslash.
    """
    if quote == "'":
        return re.sub(r"\\(.)", r"\1", raw, flags=re.DOTALL)
    try:
        return json.loads(f'"{raw}"')
    except json.JSONDecodeError as e:
        msg = f"Invalid escape in filter value: {raw}"
        raise ValueError(msg) from e


def _read_quoted(text: str, start: int) -> tuple[str, int]:
    """Read the quoted value opening at ``text[start]``; return it and the index after the closing quote."""
    quote = text[start]
    pos = start + 1
    raw: list[str] = []
    while pos < len(text):
        char = text[pos]
        if char == "\\" and pos + 1 < len(text):
            raw.append(text[pos : pos + 2])
            pos += 2
            continue
        if char == quote:
            return _unescape("".join(raw), quote), pos + 1
        raw.append(char)
        pos += 1
    msg = f"Invalid filter syntax: unterminated value in {text}"
    raise ValueError(msg)


def _tokenize(filter_query: str) -> list[tuple[str, str]]:
    """Split a filter into (kind, text) tokens; quoted values are unescaped and never split."""
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(filter_query):
        char = filter_query[pos]
        if char.isspace():
            pos += 1
        elif char in "'\"":
            value, pos = _read_quoted(filter_query, pos)
            tokens.append(("value", value))
        elif filter_query.startswith("&&", pos):
            tokens.append(("and", "&&"))
            pos += 2
        elif filter_query.startswith("||", pos):
            tokens.append(("or", "||"))
            pos += 2
        elif char in "()":
            tokens.append((char, char))
            pos += 1
        elif match := _OPERATOR_PATTERN.match(filter_query, pos):
            tokens.append(("op", match.group()))
            pos = match.end()
        elif match := _FIELD_PATTERN.match(filter_query, pos):
            tokens.append(("field", match.group()))
            pos = match.end()
        else:
            msg = f"Invalid filter syntax: {filter_query}"
            raise ValueError(msg)
    return tokens


class _FilterParser:
    """Recursive-descent parser over filter tokens.

    Grammar: ``term (&& term)*`` where a term is a comparison or a
    parenthesized ``comparison (|| comparison)*`` group. Values are always
    bound as the strings written in the filter; column affinity handles
    numeric columns.
    """

    def __init__(self, filter_query: str) -> None:
        self._query = filter_query
        self._tokens = _tokenize(filter_query)
        self._pos = 0

    def parse(self) -> tuple[str, list[str]]:
        conditions: list[str] = []
        params: list[str] = []
        while True:
            condition, condition_params = self._term()
            conditions.append(condition)
            params.extend(condition_params)
            if not self._accept("and"):
                break
        if self._pos != len(self._tokens):
            self._fail()
        return " AND ".join(conditions), params

    def _term(self) -> tuple[str, list[str]]:
        if not self._accept("("):
            condition, value = self._comparison()
            return condition, [value]

        conditions: list[str] = []
        params: list[str] = []
        while True:
            condition, value = self._comparison()
            conditions.append(condition)
            params.append(value)
            if not self._accept("or"):
                break
        self._expect(")")
        return f"({' OR '.join(conditions)})", params

    def _comparison(self) -> tuple[str, str]:
        field = self._expect("field")
        sql_op = _SQL_OPERATORS[self._expect("op")]
        value = self._expect("value")
        if sql_op == "LIKE":
            return f"{field} LIKE ? ESCAPE '\\'", _like_pattern(value)
        return f"{field} {sql_op} ?", value

    def _accept(self, kind: str) -> bool:
        if self._pos < len(self._tokens) and self._tokens[self._pos][0] == kind:
            self._pos += 1
            return True
        return False

    def _expect(self, kind: str) -> str:
        if self._pos >= len(self._tokens) or self._tokens[self._pos][0] != kind:
            self._fail()
        text = self._tokens[self._pos][1]
        self._pos += 1
        return text

    def _fail(self) -> NoReturn:
        msg = f"Invalid filter syntax: {self._query}"
        raise ValueError(msg)


def parse_filter(filter_query: str) -> tuple[str, list[str]]:
    """Parse filter syntax into a SQL WHERE clause and parameter list.

    Supports ``field op "value"`` comparisons joined by ``&&`` and parenthesized
    ``||`` groups, e.g. ``user_id = "7" && (status = "pending" || status = "rejected")``.
    Values may contain quotes (backslash-escaped), ``&&`` or ``||``.
    """
    if not filter_query:
        return "", []
    return _FilterParser(filter_query).parse()


def _safe_sort(sort: str) -> str:
    """Translate ``-field`` / ``field`` sort syntax into a validated ORDER BY clause."""
    if not sort:
        return "id ASC"
    descending = sort.startswith("-")
    field = sort[1:] if descending else sort
    if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", field):
        logger.warning("Invalid sort parameter, using default", extra={"sort": sort})
        return "id ASC"
    # id breaks ties so "most recent" queries are deterministic within one timestamp
    direction = "DESC" if descending else "ASC"
    return f"{field} {direction}, id {direction}"


class DBClient:
    """Async SQLite client bound to one database file (or an in-memory database).

    Instances are created explicitly and passed to the stores that need them;
    there is no module-level connection cache.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self._path = get_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None
        # One shared connection: each write and its commit or rollback must not interleave with another
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path | str:
        """Resolved database location."""
        return self._path

    async def connect(self) -> aiosqlite.Connection:
        """Open the connection on first use and return it."""
        if self._conn is not None:
            return self._conn

        if isinstance(self._path, Path):
            self._path.parent.mkdir(parents=True, exist_ok=True)

        conn = await aiosqlite.connect(str(self._path))
        await conn.execute("PRAGMA foreign_keys = ON")
        if isinstance(self._path, Path):
            await conn.execute("PRAGMA journal_mode = WAL")
        self._conn = conn

        logger.info("Created new SQLite connection", extra={"db_path": str(self._path)})
        return conn

    async def close(self) -> None:
        """Close the connection if it is open."""
        if self._conn is None:
            return
        try:
            await self._conn.close()
            logger.info("Closed SQLite connection", extra={"db_path": str(self._path)})
        except Exception as e:
            logger.warning("Error closing SQLite connection", extra={"error": str(e)})
        finally:
            self._conn = None

    async def execute_script(self, script: str) -> None:
        """Run a multi-statement SQL script (used for schema creation)."""
        conn = await self.connect()
        async with self._write_lock:
            await conn.executescript(script)
            await conn.commit()

    async def create_record(self, *, collection: str, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a new record and return it with its assigned id.

        Raises:
            UniqueConstraintError: If the row violates a unique index
            DatabaseError: For any other failure
        """
        _validate_collection_name(collection)
        conn = await self.connect()

        columns = list(data.keys())
        columns_str = ", ".join(columns)
        placeholders_str = ", ".join("?" for _ in columns)
        values = [_serialize_value(data[key]) for key in columns]

        query = f"INSERT INTO {collection} ({columns_str}) VALUES ({placeholders_str})"  # noqa: S608 - collection is validated
        async with self._write_lock:
            try:
                cursor = await conn.execute(query, values)
                await conn.commit()
            except aiosqlite.IntegrityError as e:
                await conn.rollback()
                if "UNIQUE" in str(e).upper():
                    logger.info("Unique constraint rejected insert", extra={"collection": collection, "error": str(e)})
                    raise UniqueConstraintError(f"Duplicate record in {collection}: {e}") from e
                raise DatabaseError(f"Failed to create record in {collection}: {e}") from e
            except aiosqlite.Error as e:
                logger.error("create_record_failed", extra={"collection": collection, "error": str(e)})
                if "no such table" in str(e):
                    raise DatabaseError(f"Table '{collection}' does not exist. Call init_db() first.") from e
                raise DatabaseError(f"Failed to create record in {collection}: {e}") from e

        record_id = cursor.lastrowid
        logger.debug("Created record", extra={"collection": collection, "record_id": record_id})
        return await self.get_record(collection=collection, record_id=str(record_id))

    async def get_record(self, *, collection: str, record_id: str) -> dict[str, Any]:
        """Fetch a single record by ID, raising RecordNotFoundError if not found."""
        _validate_collection_name(collection)
        conn = await self.connect()

        query = f"SELECT * FROM {collection} WHERE id = ?"  # noqa: S608 - collection is validated
        try:
            cursor = await conn.execute(query, (_as_row_id(record_id),))
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("get_record_failed", extra={"collection": collection, "record_id": record_id, "error": str(e)})
            raise DatabaseError(f"Failed to get record from {collection}: {e}") from e

        if row is None:
            raise RecordNotFoundError(f"Record not found in {collection}: {record_id}")

        columns = [description[0] for description in cursor.description]
        return _convert_record_ids(dict(zip(columns, row, strict=True)))

    async def update_record(
        self,
        *,
        collection: str,
        record_id: str,
        data: dict[str, Any],
        filter_query: str = "",
    ) -> dict[str, Any]:
        """Update a record by ID and return the updated record.

        When ``filter_query`` is given the update only applies if the row also
        matches it (compare-and-set); a non-matching row raises RecordNotFoundError.

        Raises:
            RecordNotFoundError: If no row matched
            UniqueConstraintError: If the update violates a unique index
            DatabaseError: For any other failure
        """
        if not data:
            msg = "Empty update payload"
            raise ValueError(msg)

        _validate_collection_name(collection)
        conn = await self.connect()

        set_clause = ", ".join(f"{key} = ?" for key in data)
        values: list[Any] = [_serialize_value(val) for val in data.values()]
        values.append(_as_row_id(record_id))

        where_clause = "id = ?"
        if filter_query:
            extra_clause, extra_params = parse_filter(filter_query)
            where_clause = f"{where_clause} AND {extra_clause}"
            values.extend(extra_params)

        query = f"UPDATE {collection} SET {set_clause} WHERE {where_clause}"  # noqa: S608 - collection is validated
        async with self._write_lock:
            try:
                cursor = await conn.execute(query, values)
                await conn.commit()
            except aiosqlite.IntegrityError as e:
                await conn.rollback()
                if "UNIQUE" in str(e).upper():
                    logger.info("Unique constraint rejected update", extra={"collection": collection, "error": str(e)})
                    raise UniqueConstraintError(f"Duplicate record in {collection}: {e}") from e
                raise DatabaseError(f"Failed to update record in {collection}: {e}") from e
            except aiosqlite.Error as e:
                logger.error(
                    "update_record_failed", extra={"collection": collection, "record_id": record_id, "error": str(e)}
                )
                raise DatabaseError(f"Failed to update record in {collection}: {e}") from e

        if cursor.rowcount == 0:
            raise RecordNotFoundError(f"Record not found in {collection}: {record_id}")

        logger.debug("Updated record", extra={"collection": collection, "record_id": record_id})
        return await self.get_record(collection=collection, record_id=record_id)

    async def delete_record(self, *, collection: str, record_id: str, filter_query: str = "") -> None:
        """Delete a record by ID, raising RecordNotFoundError if nothing was deleted.

        ``filter_query`` narrows the delete the same way as in update_record.
        """
        _validate_collection_name(collection)
        conn = await self.connect()

        where_clause = "id = ?"
        params: list[Any] = [_as_row_id(record_id)]
        if filter_query:
            extra_clause, extra_params = parse_filter(filter_query)
            where_clause = f"{where_clause} AND {extra_clause}"
            params.extend(extra_params)

        query = f"DELETE FROM {collection} WHERE {where_clause}"  # noqa: S608 - collection is validated
        async with self._write_lock:
            try:
                cursor = await conn.execute(query, params)
                await conn.commit()
            except aiosqlite.Error as e:
                logger.error(
                    "delete_record_failed", extra={"collection": collection, "record_id": record_id, "error": str(e)}
                )
                raise DatabaseError(f"Failed to delete record from {collection}: {e}") from e

        if cursor.rowcount == 0:
            raise RecordNotFoundError(f"Record not found in {collection}: {record_id}")

        logger.debug("Deleted record", extra={"collection": collection, "record_id": record_id})

    async def list_records(
        self,
        *,
        collection: str,
        page: int = 1,
        per_page: int = 50,
        filter_query: str = "",
        sort: str = "",
    ) -> list[dict[str, Any]]:
        """List records with optional filtering, sorting (``-field`` for descending), and pagination."""
        _validate_collection_name(collection)
        conn = await self.connect()

        where_clause = ""
        params: list[Any] = []
        if filter_query:
            where_clause, params = parse_filter(filter_query)
            where_clause = f"WHERE {where_clause}"

        offset = (page - 1) * per_page
        query = f"SELECT * FROM {collection} {where_clause} ORDER BY {_safe_sort(sort)} LIMIT ? OFFSET ?"  # noqa: S608 - collection is validated
        params.extend([per_page, offset])

        try:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("list_records_failed", extra={"collection": collection, "error": str(e)})
            raise DatabaseError(f"Failed to list records from {collection}: {e}") from e

        columns = [description[0] for description in cursor.description]
        return [_convert_record_ids(dict(zip(columns, row, strict=True))) for row in rows]

    async def get_first_record(self, *, collection: str, filter_query: str, sort: str = "") -> dict[str, Any] | None:
        """Return the first record matching the filter, or None."""
        records = await self.list_records(collection=collection, filter_query=filter_query, sort=sort, per_page=1)
        return records[0] if records else None

    async def sum_field(self, *, collection: str, field: str, filter_query: str = "") -> int:
        """Return SUM(field) over matching rows (0 when nothing matches)."""
        _validate_collection_name(collection)
        _validate_collection_name(field)
        conn = await self.connect()

        where_clause = ""
        params: list[Any] = []
        if filter_query:
            where_clause, params = parse_filter(filter_query)
            where_clause = f"WHERE {where_clause}"

        query = f"SELECT COALESCE(SUM({field}), 0) FROM {collection} {where_clause}"  # noqa: S608 - names are validated
        try:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("sum_field_failed", extra={"collection": collection, "field": field, "error": str(e)})
            raise DatabaseError(f"Failed to sum {field} in {collection}: {e}") from e

        return int(row[0]) if row else 0

    async def sum_field_by(
        self, *, collection: str, field: str, group_by: str, filter_query: str = ""
    ) -> dict[str, int]:
        """Return SUM(field) per distinct ``group_by`` value over matching rows."""
        _validate_collection_name(collection)
        _validate_collection_name(field)
        _validate_collection_name(group_by)
        conn = await self.connect()

        where_clause = ""
        params: list[Any] = []
        if filter_query:
            where_clause, params = parse_filter(filter_query)
            where_clause = f"WHERE {where_clause}"

        query = f"SELECT {group_by}, COALESCE(SUM({field}), 0) FROM {collection} {where_clause} GROUP BY {group_by}"  # noqa: S608 - names are validated
        try:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("sum_field_by_failed", extra={"collection": collection, "field": field, "error": str(e)})
            raise DatabaseError(f"Failed to sum {field} by {group_by} in {collection}: {e}") from e

        return {str(key): int(total) for key, total in rows}


def _as_row_id(record_id: str) -> int | str:
    """Row ids are integers in SQLite but travel as strings everywhere else."""
    return int(record_id) if str(record_id).isdigit() else record_id
