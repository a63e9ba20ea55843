"""Row store used by the ledger and the message transport.

The core only relies on :class:`Store`. Two implementations are shipped: an
in-memory store and a JSON-file store for the CLI.
"""

from __future__ import annotations

import json
import logging
import time
from copy import deepcopy
from pathlib import Path
from typing import Any, Callable, Protocol, TypedDict
from uuid import uuid4

logger = logging.getLogger(__name__)

Row = dict[str, Any]
Predicate = Callable[[Row], bool]

TOKENS_TABLE = "cashuToken"
MESSAGES_TABLE = "nostrMessage"
REACTIONS_TABLE = "nostrReaction"
PAYMENTS_TABLE = "paymentEvent"


class WriteResult(TypedDict, total=False):
    ok: bool
    id: str
    error: str


class Store(Protocol):
    def insert(self, table: str, fields: Row) -> WriteResult: ...

    def update(self, table: str, fields: Row) -> WriteResult: ...

    def query(
        self,
        table: str,
        predicate: Predicate | None = None,
        order_by: str = "createdAt",
    ) -> list[Row]: ...


class MemoryStore:
    """Dictionary-backed store. Rows are copied in and out."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Row]] = {}

    def insert(self, table: str, fields: Row) -> WriteResult:
        row_id = str(fields.get("id") or uuid4())
        rows = self._tables.setdefault(table, {})
        if row_id in rows:
            return {"ok": False, "error": f"Duplicate id {row_id}"}

        row = deepcopy(fields)
        row["id"] = row_id
        row.setdefault("createdAt", time.time())
        row.setdefault("isDeleted", False)
        rows[row_id] = row
        self._changed()
        return {"ok": True, "id": row_id}

    def update(self, table: str, fields: Row) -> WriteResult:
        row_id = fields.get("id")
        row = self._tables.get(table, {}).get(str(row_id))
        if row is None:
            return {"ok": False, "error": f"No row {row_id} in {table}"}
        row.update(deepcopy({k: v for k, v in fields.items() if k != "id"}))
        self._changed()
        return {"ok": True, "id": str(row_id)}

    def query(
        self,
        table: str,
        predicate: Predicate | None = None,
        order_by: str = "createdAt",
    ) -> list[Row]:
        rows = [
            deepcopy(row)
            for row in self._tables.get(table, {}).values()
            if predicate is None or predicate(row)
        ]
        rows.sort(key=lambda row: row.get(order_by) or 0)
        return rows

    def _changed(self) -> None:
        """Hook for subclasses that persist after each write."""


class JsonFileStore(MemoryStore):
    """MemoryStore persisted to a single JSON file after every write."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path).expanduser()
        if self.path.exists():
            try:
                self._tables = json.loads(self.path.read_text())
            except ValueError as e:
                raise ValueError(f"Corrupt store file {self.path}: {e}") from e
            logger.debug("Loaded store from %s", self.path)

    def _changed(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._tables, indent=2))
        tmp.replace(self.path)
