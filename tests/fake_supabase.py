"""
In-memory stand-in for the Supabase query builder used by the tests.

Supports the subset of the postgrest API the service uses: select (with
count="exact"), insert, update, delete, eq/neq/in_/lt/lte/gt/gte filters,
order, limit, range, single, execute. Rows are deep-copied in and out.
"""

import copy
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4


class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.op = "select"
        self.payload: Any = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.orders: List[tuple] = []
        self.limit_n: Optional[int] = None
        self.range_bounds: Optional[tuple] = None
        self.count_mode: Optional[str] = None
        self.single_row = False

    # operations
    def select(self, columns: str = "*", count: Optional[str] = None):
        self.op = "select"
        self.count_mode = count
        return self

    def insert(self, data):
        self.op = "insert"
        self.payload = data
        return self

    def update(self, data):
        self.op = "update"
        self.payload = data
        return self

    def delete(self):
        self.op = "delete"
        return self

    # filters
    def eq(self, column, value):
        self.filters.append(lambda r: r.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda r: r.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda r: r.get(column) in values)
        return self

    def _compare(self, column, value, test):
        self.filters.append(lambda r: r.get(column) is not None and test(r.get(column), value))
        return self

    def lt(self, column, value):
        return self._compare(column, value, lambda a, b: a < b)

    def lte(self, column, value):
        return self._compare(column, value, lambda a, b: a <= b)

    def gt(self, column, value):
        return self._compare(column, value, lambda a, b: a > b)

    def gte(self, column, value):
        return self._compare(column, value, lambda a, b: a >= b)

    # modifiers
    def order(self, column, desc: bool = False):
        self.orders.append((column, desc))
        return self

    def limit(self, n: int):
        self.limit_n = n
        return self

    def range(self, start: int, end: int):
        self.range_bounds = (start, end)
        return self

    def single(self):
        self.single_row = True
        return self

    def execute(self):
        error = self.db.failures.get((self.table_name, self.op))
        if error is not None:
            raise error

        rows = self.db.tables.setdefault(self.table_name, [])

        if self.op == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for item in items:
                row = copy.deepcopy(item)
                row.setdefault("id", str(uuid4()))
                rows.append(row)
                inserted.append(copy.deepcopy(row))
            return FakeResponse(inserted)

        matched = [r for r in rows if all(f(r) for f in self.filters)]

        if self.op == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return FakeResponse([copy.deepcopy(r) for r in matched])

        if self.op == "delete":
            self.db.tables[self.table_name] = [r for r in rows if not any(r is m for m in matched)]
            return FakeResponse([copy.deepcopy(r) for r in matched])

        for column, desc in reversed(self.orders):
            matched = sorted(
                matched,
                key=lambda r: (r.get(column) is None, r.get(column) if r.get(column) is not None else ""),
                reverse=desc,
            )

        total = len(matched)
        if self.range_bounds:
            start, end = self.range_bounds
            matched = matched[start:end + 1]
        if self.limit_n is not None:
            matched = matched[:self.limit_n]

        data = [copy.deepcopy(r) for r in matched]
        if self.single_row:
            data = data[0] if data else None

        return FakeResponse(data, count=total if self.count_mode == "exact" else None)


class FakeSupabase:
    """Table name -> list of row dicts."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(tables or {})
        self.failures: Dict[tuple, Exception] = {}

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def fail(self, table: str, op: str, error: Optional[Exception] = None):
        """Make every `op` on `table` raise until cleared."""
        self.failures[(table, op)] = error or RuntimeError(f"{table} {op} failed")

    def clear_failures(self):
        self.failures.clear()

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self.tables.get(table, []))

    def row(self, table: str, row_id: Any) -> Optional[Dict[str, Any]]:
        for r in self.tables.get(table, []):
            if r.get("id") == row_id:
                return copy.deepcopy(r)
        return None
