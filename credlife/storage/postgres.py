from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from credlife.logging import get_logger
from credlife.storage.common import (
    DESCENDING,
    OTP_COLLECTION,
    SESSION_COLLECTION,
    Document,
    Filter,
    Patch,
    SortSpec,
    normalize_value,
)
from credlife.storage.errors import ConstraintViolation, StorageError, StorageUnavailable

T = TypeVar("T")

# Collection name -> (table, columns)
_TABLES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    OTP_COLLECTION: (
        "account_otp",
        (
            "id",
            "email",
            "purpose",
            "code",
            "attempts",
            "expires_at",
            "created_at",
            "updated_at",
        ),
    ),
    SESSION_COLLECTION: (
        "account_session",
        (
            "id",
            "account_id",
            "token_hash",
            "is_active",
            "expires_at",
            "created_at",
            "last_used_at",
            "user_agent",
            "ip_address",
        ),
    ),
}

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account_otp (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        purpose TEXT NOT NULL,
        code TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (email, purpose)
    )
    """,
    "CREATE INDEX IF NOT EXISTS account_otp_expires_idx ON account_otp (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS account_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ,
        user_agent TEXT,
        ip_address TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_session_active_token_idx
        ON account_session (token_hash) WHERE is_active
    """,
    "CREATE INDEX IF NOT EXISTS account_session_account_idx ON account_session (account_id)",
)

_COMPARISON_SQL = {
    "$lte": "<=",
    "$lt": "<",
    "$gte": ">=",
    "$gt": ">",
    "$ne": "IS DISTINCT FROM",
}

_UNAVAILABLE_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError, PoolTimeout)


class PostgresCollection:
    """Document-style access to one credential table."""

    def __init__(self, store: "PostgresDocumentStore", name: str) -> None:
        if name not in _TABLES:
            raise ValueError(f"unknown collection: {name}")
        self.store = store
        self.name = name
        self.table, self.columns = _TABLES[name]

    def _column(self, field_name: str) -> sql.Identifier:
        if field_name not in self.columns:
            raise ValueError(f"unknown field {field_name!r} for {self.table}")
        return sql.Identifier(field_name)

    def compile_filter(self, flt: Filter) -> Tuple[sql.Composable, List[Any]]:
        """Translate an equality/``$lte``/``$or`` filter into a WHERE clause."""

        clauses: List[sql.Composable] = []
        params: List[Any] = []
        for field_name, expected in flt.items():
            if field_name == "$or":
                branches = []
                for branch in expected:
                    branch_sql, branch_params = self.compile_filter(branch)
                    branches.append(sql.SQL("({})").format(branch_sql))
                    params.extend(branch_params)
                clauses.append(sql.SQL("({})").format(sql.SQL(" OR ").join(branches)))
                continue
            column = self._column(field_name)
            if isinstance(expected, dict):
                for op, operand in expected.items():
                    operator = _COMPARISON_SQL.get(op)
                    if operator is None:
                        raise ValueError(f"unsupported filter operator: {op}")
                    clauses.append(
                        sql.SQL("{} {} %s").format(column, sql.SQL(operator))
                    )
                    params.append(normalize_value(operand))
            elif expected is None:
                clauses.append(sql.SQL("{} IS NULL").format(column))
            else:
                clauses.append(sql.SQL("{} = %s").format(column))
                params.append(normalize_value(expected))
        if not clauses:
            return sql.SQL("TRUE"), params
        return sql.SQL(" AND ").join(clauses), params

    def compile_patch(self, patch: Patch) -> Tuple[sql.Composable, List[Any]]:
        assignments: List[sql.Composable] = []
        params: List[Any] = []
        for op, fields in patch.items():
            for field_name, value in fields.items():
                column = self._column(field_name)
                if op == "$set":
                    assignments.append(sql.SQL("{} = %s").format(column))
                elif op == "$inc":
                    assignments.append(sql.SQL("{} = {} + %s").format(column, column))
                else:
                    raise ValueError(f"unsupported update operator: {op}")
                params.append(normalize_value(value))
        if not assignments:
            raise ValueError("update requires at least one field")
        return sql.SQL(", ").join(assignments), params

    def _compile_sort(self, sort: Optional[SortSpec]) -> sql.Composable:
        if not sort:
            return sql.SQL("")
        parts = [
            sql.SQL("{} {} NULLS LAST").format(
                self._column(field_name),
                sql.SQL("DESC" if direction == DESCENDING else "ASC"),
            )
            for field_name, direction in sort
        ]
        return sql.SQL(" ORDER BY ") + sql.SQL(", ").join(parts)

    def create(self, doc: Document) -> Document:
        fields = [name for name in self.columns if name in doc]
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(self.table),
            sql.SQL(", ").join(sql.Identifier(f) for f in fields),
            sql.SQL(", ").join(sql.Placeholder() for _ in fields),
        )
        params = [normalize_value(doc[f]) for f in fields]
        return self.store._run(
            "create", lambda conn: conn.execute(query, params).fetchone(), write=True
        )

    def find_one(self, flt: Filter) -> Optional[Document]:
        where, params = self.compile_filter(flt)
        query = sql.SQL("SELECT * FROM {} WHERE {} LIMIT 1").format(
            sql.Identifier(self.table), where
        )
        return self.store._run("find_one", lambda conn: conn.execute(query, params).fetchone())

    def find(self, flt: Filter, sort: Optional[SortSpec] = None) -> List[Document]:
        where, params = self.compile_filter(flt)
        query = sql.SQL("SELECT * FROM {} WHERE {}").format(
            sql.Identifier(self.table), where
        ) + self._compile_sort(sort)
        rows = self.store._run("find", lambda conn: conn.execute(query, params).fetchall())
        return list(rows or [])

    def update(self, flt: Filter, patch: Patch) -> int:
        assignments, patch_params = self.compile_patch(patch)
        where, where_params = self.compile_filter(flt)
        query = sql.SQL("UPDATE {} SET {} WHERE {}").format(
            sql.Identifier(self.table), assignments, where
        )
        params = patch_params + where_params
        return self.store._run(
            "update", lambda conn: conn.execute(query, params).rowcount, write=True
        )

    def delete(self, flt: Filter) -> int:
        where, params = self.compile_filter(flt)
        query = sql.SQL("DELETE FROM {} WHERE {}").format(sql.Identifier(self.table), where)
        return self.store._run(
            "delete", lambda conn: conn.execute(query, params).rowcount, write=True
        )


class PostgresDocumentStore:
    """Durable credential tier backed by Postgres."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._collections: Dict[str, PostgresCollection] = {}
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the credential tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _run(self, operation: str, func: Callable[[Any], T], *, write: bool = False) -> T:
        try:
            with self._connect() as conn:
                return func(conn)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "credential already exists", {"operation": operation}
            ) from exc
        except _UNAVAILABLE_ERRORS as exc:
            self.logger.warning(
                "postgres_operation_failed",
                operation=operation,
                write=write,
                error=str(exc),
            )
            raise StorageUnavailable(
                str(exc) or "postgres unavailable", backend="postgres", operation=operation
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_statement_failed",
                operation=operation,
                write=write,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StorageError(
                str(exc) or "postgres statement failed", backend="postgres", operation=operation
            ) from exc

    def collection(self, name: str) -> PostgresCollection:
        coll = self._collections.get(name)
        if coll is None:
            coll = PostgresCollection(self, name)
            self._collections[name] = coll
        return coll

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresCollection", "PostgresDocumentStore"]
