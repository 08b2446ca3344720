import re
from datetime import datetime, timezone

import pytest


# Matches any value, as long as the key is present.
ANY = object()


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, table_name: str, db: "FakeSupabase"):
        self.table_name = table_name
        self.db = db
        self.operation = "select"
        self.payload = None
        self.on_conflict = None
        self.filters = []
        self.order_by = None
        self.limit_count = None

    def select(self, _fields: str):
        self.operation = "select"
        return self

    def insert(self, payload: dict):
        self.operation = "insert"
        self.payload = payload
        return self

    def update(self, payload: dict):
        self.operation = "update"
        self.payload = payload
        return self

    def upsert(self, payload: dict, on_conflict: str = "id"):
        self.operation = "upsert"
        self.payload = payload
        self.on_conflict = on_conflict
        return self

    def eq(self, key: str, value):
        self.filters.append(("eq", key, value))
        return self

    def is_(self, key: str, value):
        self.filters.append(("is", key, value))
        return self

    def in_(self, key: str, values):
        self.filters.append(("in", key, list(values)))
        return self

    def ilike(self, key: str, pattern: str):
        self.filters.append(("ilike", key, pattern))
        return self

    def or_(self, expression: str):
        clauses = []
        for clause in expression.split(","):
            key, op, value = clause.split(".", 2)
            clauses.append((op, key, value))
        self.filters.append(("or", None, clauses))
        return self

    def order(self, key: str, desc: bool = False):
        self.order_by = (key, desc)
        return self

    def limit(self, count: int):
        self.limit_count = count
        return self

    @staticmethod
    def _ilike(actual, pattern: str) -> bool:
        if actual is None:
            return False
        regex = "^" + re.escape(pattern).replace("%", ".*") + "$"
        return re.match(regex, str(actual), re.IGNORECASE) is not None

    def _match_one(self, row: dict, kind: str, key, value) -> bool:
        if kind == "eq":
            return row.get(key) == value
        if kind == "is":
            return value != "null" or row.get(key) is None
        if kind == "in":
            return row.get(key) in value
        if kind == "ilike":
            return self._ilike(row.get(key), value)
        if kind == "or":
            return any(self._match_one(row, op, col, val) for op, col, val in value)
        raise AssertionError(f"Unsupported filter {kind}")

    def _matches(self, row: dict) -> bool:
        return all(self._match_one(row, kind, key, value) for kind, key, value in self.filters)

    def _check_failures(self):
        for table, operation, match in self.db.failures:
            if table != self.table_name or operation != self.operation:
                continue
            eq_filters = {key: value for kind, key, value in self.filters if kind == "eq"}
            source = {**(self.payload or {}), **eq_filters}
            if all(
                (key in source) if value is ANY else source.get(key) == value
                for key, value in match.items()
            ):
                raise Exception(f"simulated {operation} failure on {table}")

    def _new_row(self, table: list, payload: dict) -> dict:
        row = dict(payload)
        row.setdefault("id", f"{self.table_name}-{len(table)+1}")
        row.setdefault("created_at", _ts())
        table.append(row)
        return row

    def execute(self):
        table = self.db.tables.setdefault(self.table_name, [])
        self._check_failures()
        if self.operation != "select":
            self.db.writes.append((self.table_name, self.operation))

        if self.operation == "insert":
            return FakeResponse([dict(self._new_row(table, self.payload or {}))])

        if self.operation == "upsert":
            payload = self.payload or {}
            for row in table:
                if row.get(self.on_conflict) == payload.get(self.on_conflict):
                    row.update(payload)
                    return FakeResponse([dict(row)])
            return FakeResponse([dict(self._new_row(table, payload))])

        if self.operation == "update":
            updated = []
            for row in table:
                if self._matches(row):
                    row.update(self.payload or {})
                    updated.append(dict(row))
            return FakeResponse(updated)

        rows = [dict(row) for row in table if self._matches(row)]
        if self.order_by:
            key, desc = self.order_by
            rows.sort(key=lambda row: row.get(key) or "", reverse=desc)
        if self.limit_count is not None:
            rows = rows[: self.limit_count]
        return FakeResponse(rows)


class FakeSupabase:
    ANY = ANY

    def __init__(self, tables: dict | None = None):
        self.tables = tables or {}
        self.failures = []
        self.writes = []

    def table(self, table_name: str):
        return FakeQuery(table_name, self)

    def fail(self, table: str, operation: str, **match):
        """Make matching writes raise, e.g. ``fail("listings", "update", id="L-2")``."""
        self.failures.append((table, operation, match))


def _ts() -> str:
    return datetime.now(timezone.utc).isoformat()


@pytest.fixture
def make_db():
    """Factory for in-memory Supabase doubles: ``make_db({"listings": [...]})``."""
    return FakeSupabase
