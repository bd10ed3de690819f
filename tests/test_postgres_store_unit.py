from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors

from credlife.logging import get_logger
from credlife.service.errors import ValidationFailed
from credlife.service.otp import DurableOTPRepository
from credlife.storage.common import DESCENDING
from credlife.storage.errors import ConstraintViolation, StorageError, StorageUnavailable
from credlife.storage.models import OTPPurpose
from credlife.storage.postgres import PostgresCollection, PostgresDocumentStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self):
        self.executed = []
        self.result = FakeCursor()
        self.error = None

    def execute(self, query, params=None):
        rendered = query if isinstance(query, str) else query.as_string()
        self.executed.append((rendered, params))
        if self.error is not None:
            raise self.error
        return self.result


class FakePool:
    def __init__(self):
        self.conn = FakeConnection()
        self.closed = False

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        self.closed = True


@pytest.fixture
def store():
    # Bypass __init__ so no pool is opened
    store = PostgresDocumentStore.__new__(PostgresDocumentStore)
    store.dsn = "postgresql://unused"
    store.logger = get_logger(__name__)
    store.pool = FakePool()
    store._collections = {}
    return store


class TestFilterCompilation:
    def test_equality_and_null(self, store):
        sessions = store.collection("sessions")
        where, params = sessions.compile_filter({"account_id": "a1", "user_agent": None})

        assert where.as_string() == '"account_id" = %s AND "user_agent" IS NULL'
        assert params == ["a1"]

    def test_comparison_operators(self, store):
        otps = store.collection("otps")
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        where, params = otps.compile_filter({"expires_at": {"$lte": now}, "attempts": {"$ne": 0}})

        assert where.as_string() == '"expires_at" <= %s AND "attempts" IS DISTINCT FROM %s'
        assert params == [now, 0]

    def test_or_branches(self, store):
        sessions = store.collection("sessions")
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        where, params = sessions.compile_filter(
            {"$or": [{"expires_at": {"$lte": now}}, {"is_active": False}]}
        )

        assert where.as_string() == '(("expires_at" <= %s) OR ("is_active" = %s))'
        assert params == [now, False]

    def test_empty_filter_matches_everything(self, store):
        where, params = store.collection("otps").compile_filter({})
        assert where.as_string() == "TRUE"
        assert params == []

    def test_unknown_field_is_rejected(self, store):
        with pytest.raises(ValueError):
            store.collection("otps").compile_filter({"password": "x"})

    def test_unknown_operator_is_rejected(self, store):
        with pytest.raises(ValueError):
            store.collection("otps").compile_filter({"attempts": {"$regex": "1"}})

    def test_purpose_enum_is_stored_as_value(self, store):
        from credlife.storage.models import OTPPurpose

        _, params = store.collection("otps").compile_filter(
            {"purpose": OTPPurpose.PASSWORD_RESET}
        )
        assert params == ["password_reset"]


class TestPatchCompilation:
    def test_increment_is_single_statement(self, store):
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        assignments, params = store.collection("otps").compile_patch(
            {"$inc": {"attempts": 1}, "$set": {"updated_at": now}}
        )

        assert assignments.as_string() == '"attempts" = "attempts" + %s, "updated_at" = %s'
        assert params == [1, now]

    def test_empty_patch_is_rejected(self, store):
        with pytest.raises(ValueError):
            store.collection("otps").compile_patch({"$set": {}})

    def test_unknown_collection(self, store):
        with pytest.raises(ValueError):
            PostgresCollection(store, "users")


class TestQueries:
    def test_update_params_follow_assignment_order(self, store):
        store.pool.conn.result = FakeCursor(rowcount=1)
        updated = store.collection("sessions").update(
            {"id": "s1", "is_active": True}, {"$set": {"is_active": False}}
        )

        query, params = store.pool.conn.executed[-1]
        assert updated == 1
        assert query == (
            'UPDATE "account_session" SET "is_active" = %s '
            'WHERE "id" = %s AND "is_active" = %s'
        )
        assert params == [False, "s1", True]

    def test_find_with_sort(self, store):
        store.pool.conn.result = FakeCursor(rows=[{"id": "s1"}])
        rows = store.collection("sessions").find(
            {"account_id": "a1"}, [("last_used_at", DESCENDING)]
        )

        query, _ = store.pool.conn.executed[-1]
        assert rows == [{"id": "s1"}]
        assert query.endswith('ORDER BY "last_used_at" DESC NULLS LAST')

    def test_create_only_inserts_known_columns(self, store):
        store.pool.conn.result = FakeCursor(rows=[{"id": "o1"}])
        store.collection("otps").create({"id": "o1", "email": "a@b.c", "bogus": 1})

        query, params = store.pool.conn.executed[-1]
        assert query.startswith('INSERT INTO "account_otp" ("id", "email")')
        assert params == ["o1", "a@b.c"]

    def test_find_one_limits(self, store):
        store.collection("otps").find_one({"id": "missing"})
        query, _ = store.pool.conn.executed[-1]
        assert query.endswith("LIMIT 1")


class TestErrorTranslation:
    def test_unique_violation_is_constraint_violation(self, store):
        store.pool.conn.error = errors.UniqueViolation("duplicate key")

        with pytest.raises(ConstraintViolation):
            store.collection("sessions").create({"id": "s1", "account_id": "a", "token_hash": "h"})

    def test_operational_error_is_unavailable(self, store):
        store.pool.conn.error = psycopg.OperationalError("connection refused")

        with pytest.raises(StorageUnavailable) as excinfo:
            store.collection("otps").find_one({"id": "o1"})
        assert excinfo.value.backend == "postgres"
        assert excinfo.value.operation == "find_one"

    def test_schema_and_health(self, store):
        store._ensure_schema()
        statements = [query for query, _ in store.pool.conn.executed]
        assert any("CREATE TABLE IF NOT EXISTS account_otp" in q for q in statements)
        assert any("WHERE is_active" in q for q in statements)

        store.pool.conn.result = FakeCursor(rows=[{"?column?": 1}])
        store.verify_connection()
        assert store.pool.conn.executed[-1][0] == "SELECT 1"

        store.close()
        assert store.pool.closed

    def test_statement_errors_are_storage_errors(self, store):
        store.pool.conn.error = errors.InvalidTextRepresentation("bad input")

        with pytest.raises(StorageError) as excinfo:
            store.collection("otps").find_one({"id": "o1"})
        assert excinfo.value.backend == "postgres"
        assert excinfo.value.operation == "find_one"

        store.pool.conn.error = errors.UndefinedColumn("column \"attempts\" does not exist")
        with pytest.raises(StorageError):
            store.collection("otps").update({"id": "o1"}, {"$inc": {"attempts": 1}})

    async def test_repository_reports_statement_errors_as_validation_failed(self, store):
        store.pool.conn.error = errors.InvalidTextRepresentation("bad input")
        repo = DurableOTPRepository(store, timeout_seconds=1.0)

        with pytest.raises(ValidationFailed) as excinfo:
            await repo.get_otp("user@example.com", OTPPurpose.PASSWORD_RESET)
        assert excinfo.value.detail["backend"] == "durable"
