import itertools
from typing import Any, Optional

from errors import NotFoundError, RecordStoreError


class FakeRecordStore:
    """In-memory stand-in for RecordStore with a connectivity switch."""

    def __init__(self, tables: Optional[dict[str, list[dict[str, Any]]]] = None) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.online = True
        self.calls: list[tuple[str, str]] = []
        self._ids = itertools.count(1000)

    def _check(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        if not self.online:
            raise RecordStoreError(f"{op} {table} failed: connection refused")

    def _matches(self, row: dict[str, Any], filters: dict[str, Any]) -> bool:
        return all(str(row.get(k)) == str(v) for k, v in filters.items())

    async def select(self, table, filters=None, *, order=None, descending=False, columns="*"):
        self._check("select", table)
        rows = [dict(r) for r in self.tables.get(table, []) if self._matches(r, filters or {})]
        if order:
            rows.sort(key=lambda r: str(r.get(order)), reverse=descending)
        return rows

    async def get(self, table, record_id, *, columns="*"):
        rows = await self.select(table, {"id": record_id})
        if not rows:
            raise NotFoundError(f"{table} {record_id} not found")
        return rows[0]

    async def insert(self, table, data):
        self._check("insert", table)
        created = []
        for row in data if isinstance(data, list) else [data]:
            row = dict(row)
            row.setdefault("id", str(next(self._ids)))
            self.tables.setdefault(table, []).append(row)
            created.append(dict(row))
        return created

    async def update(self, table, record_id, data):
        self._check("update", table)
        for row in self.tables.get(table, []):
            if str(row.get("id")) == str(record_id):
                row.update(data)
                return dict(row)
        return None

    async def delete(self, table, filters):
        self._check("delete", table)
        self.tables[table] = [
            r for r in self.tables.get(table, []) if not self._matches(r, filters)
        ]

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None


class FakeStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail = False

    async def upload(self, path, content, content_type):
        if self.fail:
            raise RecordStoreError("upload failed", status_code=500)
        self.objects[path] = content

    async def remove(self, paths):
        for path in paths:
            self.objects.pop(path, None)

    def public_url(self, path):
        return f"https://example.test/storage/v1/object/public/receipts/{path}"
