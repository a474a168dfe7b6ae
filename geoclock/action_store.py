import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any, Callable, Optional

from geoclock.errors import InvalidActionError, StorageError
from geoclock.models import ClockPayload, PendingAction, Shift, utc_now_iso

SCHEMA = """
CREATE TABLE IF NOT EXISTS offline_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0,
    synced_at TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_retry_at TEXT,
    local_ref TEXT,
    server_ref TEXT
);
CREATE INDEX IF NOT EXISTS idx_offline_actions_timestamp ON offline_actions (timestamp);
CREATE INDEX IF NOT EXISTS idx_offline_actions_kind ON offline_actions (kind);
CREATE INDEX IF NOT EXISTS idx_offline_actions_synced ON offline_actions (synced);

CREATE TABLE IF NOT EXISTS cached_shifts (
    id TEXT PRIMARY KEY,
    clock_in_at TEXT,
    data TEXT NOT NULL,
    cached_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cached_shifts_clock_in_at ON cached_shifts (clock_in_at);

CREATE TABLE IF NOT EXISTS cached_user_data (
    key TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    cached_at TEXT NOT NULL
);
"""

RECORD_SETS = {
    "offlineActions": "offline_actions",
    "cachedShifts": "cached_shifts",
    "cachedUserData": "cached_user_data",
}


class ActionStore:
    """SQLite-backed durable queue of clock actions plus the offline caches.

    Every public coroutine is one committed transaction. Calls are serialised
    with an ``asyncio.Lock`` and executed in a worker thread so disk I/O does
    not block the event loop.
    """

    def __init__(self, path: str | Path, logger) -> None:
        self.path = str(path)
        self.logger = logger
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        if self._conn is not None:
            return
        async with self._lock:
            if self._conn is not None:
                return
            self._conn = await asyncio.to_thread(self._open)
        self.logger.info("STORE_READY path=%s", self.path)

    def _open(self) -> sqlite3.Connection:
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA synchronous=FULL")
            conn.executescript(SCHEMA)
            conn.commit()
            return conn
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"cannot open action store at {self.path}: {exc}") from exc

    async def close(self) -> None:
        async with self._lock:
            conn, self._conn = self._conn, None
            if conn is not None:
                await asyncio.to_thread(conn.close)

    async def _run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        await self.init()
        async with self._lock:
            conn = self._conn
            if conn is None:
                raise StorageError("action store is closed")
            return await asyncio.to_thread(self._transaction, conn, fn)

    @staticmethod
    def _transaction(conn: sqlite3.Connection, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        try:
            with conn:
                return fn(conn)
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    @staticmethod
    def _row_to_action(row: sqlite3.Row) -> PendingAction:
        try:
            payload = ClockPayload.from_dict(json.loads(row["payload"]))
        except (ValueError, InvalidActionError) as exc:
            raise StorageError(f"corrupted action id={row['id']}: {exc}") from exc
        return PendingAction(
            id=int(row["id"]),
            kind=row["kind"],
            payload=payload,
            created_at=row["timestamp"],
            synced=bool(row["synced"]),
            synced_at=row["synced_at"],
            retry_count=int(row["retry_count"] or 0),
            last_retry_at=row["last_retry_at"],
            local_ref=row["local_ref"],
            server_ref=row["server_ref"],
        )

    # Offline actions

    async def add_action(
        self,
        kind: str,
        payload: ClockPayload,
        *,
        local_ref: str | None = None,
        created_at: str | None = None,
    ) -> int:
        # Validates kind/payload before touching the database.
        PendingAction(id=0, kind=kind, payload=payload, created_at=created_at or "")
        timestamp = created_at or utc_now_iso()

        def _insert(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                "INSERT INTO offline_actions (kind, payload, timestamp, synced, retry_count, local_ref) "
                "VALUES (?, ?, ?, 0, 0, ?)",
                (kind, json.dumps(payload.to_dict()), timestamp, local_ref),
            )
            return int(cursor.lastrowid)

        action_id = await self._run(_insert)
        self.logger.info("STORE_ACTION_ADDED id=%s kind=%s timestamp=%s local_ref=%s", action_id, kind, timestamp, local_ref)
        return action_id

    async def get_action(self, action_id: int) -> Optional[PendingAction]:
        def _select(conn: sqlite3.Connection):
            return conn.execute("SELECT * FROM offline_actions WHERE id = ?", (action_id,)).fetchone()

        row = await self._run(_select)
        return self._row_to_action(row) if row is not None else None

    async def get_pending_actions(self) -> list[PendingAction]:
        def _select(conn: sqlite3.Connection):
            return conn.execute(
                "SELECT * FROM offline_actions WHERE synced = 0 ORDER BY timestamp ASC, id ASC"
            ).fetchall()

        rows = await self._run(_select)
        return [self._row_to_action(row) for row in rows]

    async def mark_synced(self, action_id: int, *, server_ref: str | None = None) -> bool:
        synced_at = utc_now_iso()

        def _update(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "UPDATE offline_actions SET synced = 1, synced_at = ?, server_ref = ? WHERE id = ?",
                (synced_at, server_ref, action_id),
            )
            return cursor.rowcount > 0

        updated = await self._run(_update)
        if not updated:
            self.logger.warning("STORE_MARK_SYNCED_MISSING id=%s", action_id)
        return updated

    async def increment_retry(self, action_id: int) -> int:
        retried_at = utc_now_iso()

        def _update(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                "UPDATE offline_actions SET retry_count = retry_count + 1, last_retry_at = ? WHERE id = ?",
                (retried_at, action_id),
            )
            if cursor.rowcount == 0:
                return 0
            row = conn.execute("SELECT retry_count FROM offline_actions WHERE id = ?", (action_id,)).fetchone()
            return int(row["retry_count"])

        return await self._run(_update)

    async def clear_synced(self) -> int:
        def _delete(conn: sqlite3.Connection) -> int:
            return conn.execute("DELETE FROM offline_actions WHERE synced = 1").rowcount

        deleted = await self._run(_delete)
        self.logger.info("STORE_CLEARED_SYNCED count=%s", deleted)
        return deleted

    # Caches

    async def cache_shifts(self, shifts: list[Shift]) -> int:
        cached_at = utc_now_iso()
        rows = [(shift.id, shift.clock_in_at, json.dumps(shift.to_api()), cached_at) for shift in shifts]

        def _replace(conn: sqlite3.Connection) -> int:
            conn.execute("DELETE FROM cached_shifts")
            conn.executemany(
                "INSERT OR REPLACE INTO cached_shifts (id, clock_in_at, data, cached_at) VALUES (?, ?, ?, ?)",
                rows,
            )
            return len(rows)

        return await self._run(_replace)

    async def get_cached_shifts(self) -> list[Shift]:
        def _select(conn: sqlite3.Connection):
            return conn.execute("SELECT data FROM cached_shifts ORDER BY clock_in_at DESC").fetchall()

        rows = await self._run(_select)
        try:
            return [Shift.from_api(json.loads(row["data"])) for row in rows]
        except ValueError as exc:
            raise StorageError(f"corrupted shift cache: {exc}") from exc

    async def cache_user_data(self, key: str, data: Any) -> None:
        cached_at = utc_now_iso()
        encoded = json.dumps(data)

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR REPLACE INTO cached_user_data (key, data, cached_at) VALUES (?, ?, ?)",
                (key, encoded, cached_at),
            )

        await self._run(_upsert)

    async def get_cached_user_data(self, key: str) -> Any:
        def _select(conn: sqlite3.Connection):
            return conn.execute("SELECT data FROM cached_user_data WHERE key = ?", (key,)).fetchone()

        row = await self._run(_select)
        if row is None:
            return None
        try:
            return json.loads(row["data"])
        except ValueError as exc:
            raise StorageError(f"corrupted cached value key={key}: {exc}") from exc

    async def get_storage_stats(self) -> dict[str, int]:
        def _count(conn: sqlite3.Connection) -> dict[str, int]:
            return {
                name: int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
                for name, table in RECORD_SETS.items()
            }

        return await self._run(_count)
