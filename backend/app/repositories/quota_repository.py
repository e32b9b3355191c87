from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, cast

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database


@dataclass(frozen=True)
class StoredQuotaState:
    used: int
    daily_limit: int
    reset_at: str
    operations: list[dict[str, Any]]


class QuotaRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def load(self) -> StoredQuotaState | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT used, daily_limit, reset_at, operations_json
                FROM quota_ledger_state
                WHERE id = 1
                """
            ).fetchone()

        if row is None:
            return None
        return StoredQuotaState(
            used=int(row["used"]),
            daily_limit=int(row["daily_limit"]),
            reset_at=str(row["reset_at"]),
            operations=_decode_operations(row["operations_json"]),
        )

    def save(self, state: StoredQuotaState) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO quota_ledger_state
                (id, used, daily_limit, reset_at, operations_json, updated_at)
                VALUES (1, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    used = excluded.used,
                    daily_limit = excluded.daily_limit,
                    reset_at = excluded.reset_at,
                    operations_json = excluded.operations_json,
                    updated_at = excluded.updated_at
                """,
                (
                    state.used,
                    state.daily_limit,
                    state.reset_at,
                    json.dumps(state.operations),
                    utc_now_iso(),
                ),
            )


def _decode_operations(raw_value: object) -> list[dict[str, Any]]:
    if not isinstance(raw_value, str):
        return []
    try:
        parsed = json.loads(raw_value)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    operations: list[dict[str, Any]] = []
    for item in cast(list[Any], parsed):
        if isinstance(item, dict):
            operations.append(cast(dict[str, Any], item))
    return operations
