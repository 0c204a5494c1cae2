from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Iterable

from lapi_mirror.core.models import AlertRecord, DecisionRecord

logger = logging.getLogger(__name__)

_DECISIONS_DDL = """
    CREATE TABLE IF NOT EXISTS decisions (
        id TEXT PRIMARY KEY,
        uuid TEXT UNIQUE,
        alert_id INTEGER,
        created_at TEXT NOT NULL,
        stop_at TEXT NOT NULL,
        value TEXT,
        type TEXT,
        origin TEXT,
        scenario TEXT,
        raw_data TEXT
    )
"""


class CacheStore:
    """SQLite mirror of upstream alerts and decisions plus a small key/value table."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY,
                    uuid TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    scenario TEXT,
                    source_ip TEXT,
                    message TEXT,
                    target TEXT,
                    raw_data TEXT
                )
                """
            )
            cols = {str(r["name"]) for r in conn.execute("PRAGMA table_info(alerts)").fetchall()}
            if "target" not in cols:
                conn.execute("ALTER TABLE alerts ADD COLUMN target TEXT")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_alerts_created_at ON alerts(created_at)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
            self._migrate_decision_ids(conn)
            conn.execute(_DECISIONS_DDL)
            self._widen_timestamps(conn)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_decisions_stop_at ON decisions(stop_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_decisions_alert_id ON decisions(alert_id)")

    @staticmethod
    def _widen_timestamps(conn: sqlite3.Connection) -> None:
        """Rows written with millisecond precision are padded to the current microsecond width."""
        for table, column in (("alerts", "created_at"), ("decisions", "created_at"), ("decisions", "stop_at")):
            conn.execute(
                f"UPDATE {table} SET {column} = substr({column}, 1, 23) || '000Z' "
                f"WHERE length({column}) = 24 AND {column} LIKE '%Z'"
            )

    @staticmethod
    def _migrate_decision_ids(conn: sqlite3.Connection) -> None:
        """Older databases keyed decisions by INTEGER; rebuild them with TEXT ids."""
        info = conn.execute("PRAGMA table_info(decisions)").fetchall()
        id_col = next((row for row in info if str(row["name"]) == "id"), None)
        if id_col is None or str(id_col["type"]).upper() != "INTEGER":
            return
        rows = [dict(row) for row in conn.execute("SELECT * FROM decisions").fetchall()]
        logger.info("Migrating decisions table to TEXT ids (%s rows)", len(rows))
        conn.execute("DROP INDEX IF EXISTS idx_decisions_stop_at")
        conn.execute("DROP INDEX IF EXISTS idx_decisions_alert_id")
        conn.execute("DROP TABLE decisions")
        conn.execute(_DECISIONS_DDL)
        conn.executemany(
            """
            INSERT OR REPLACE INTO decisions(
                id, uuid, alert_id, created_at, stop_at, value, type, origin, scenario, raw_data
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    str(row.get("id")),
                    row.get("uuid"),
                    row.get("alert_id"),
                    row.get("created_at"),
                    row.get("stop_at"),
                    row.get("value"),
                    row.get("type"),
                    row.get("origin"),
                    row.get("scenario"),
                    row.get("raw_data"),
                )
                for row in rows
            ],
        )

    def upsert_batch(self, alerts: Iterable[AlertRecord], decisions: Iterable[DecisionRecord]) -> int:
        """Insert or replace alerts and their decisions in one transaction. Returns alerts written."""
        alert_rows = [self._alert_params(a) for a in alerts]
        decision_rows = [self._decision_params(d) for d in decisions]
        if not alert_rows and not decision_rows:
            return 0
        with self._conn() as conn:
            for params in alert_rows:
                try:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO alerts(
                            id, uuid, created_at, scenario, source_ip, message, target, raw_data
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        params,
                    )
                except sqlite3.IntegrityError as exc:
                    logger.warning("Skip alert %s: %s", params[0], exc)
            for params in decision_rows:
                try:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO decisions(
                            id, uuid, alert_id, created_at, stop_at, value, type, origin, scenario, raw_data
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        params,
                    )
                except sqlite3.IntegrityError as exc:
                    logger.warning("Skip decision %s: %s", params[0], exc)
        return len(alert_rows)

    def refresh_decisions(self, decisions: Iterable[DecisionRecord]) -> int:
        """Update expiry of decisions that already exist. Never inserts."""
        rows = [
            (d.stop_at, json.dumps(d.raw, ensure_ascii=False, default=str), d.id)
            for d in decisions
        ]
        if not rows:
            return 0
        updated = 0
        with self._conn() as conn:
            for params in rows:
                cur = conn.execute("UPDATE decisions SET stop_at = ?, raw_data = ? WHERE id = ?", params)
                updated += cur.rowcount
        return updated

    def evict_before(self, cutoff: str) -> tuple[int, int]:
        """Delete alerts created and decisions stopped strictly before ``cutoff``."""
        with self._conn() as conn:
            alerts = conn.execute("DELETE FROM alerts WHERE created_at < ?", (cutoff,)).rowcount
            decisions = conn.execute("DELETE FROM decisions WHERE stop_at < ?", (cutoff,)).rowcount
        return int(alerts), int(decisions)

    def list_alerts(self, *, since: str, limit: int = 10000) -> list[AlertRecord]:
        limit = max(1, min(limit, 100000))
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT id, uuid, created_at, scenario, source_ip, message, target, raw_data
                FROM alerts
                WHERE created_at >= ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (since, limit),
            ).fetchall()
        return [self._to_alert(row) for row in rows]

    def get_alert(self, alert_id: int) -> AlertRecord | None:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT id, uuid, created_at, scenario, source_ip, message, target, raw_data
                FROM alerts WHERE id = ?
                """,
                (alert_id,),
            ).fetchone()
        return self._to_alert(row) if row else None

    def list_active_decisions(self, *, now: str) -> list[DecisionRecord]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT id, uuid, alert_id, created_at, stop_at, value, type, origin, scenario, raw_data
                FROM decisions
                WHERE stop_at > ?
                ORDER BY stop_at DESC
                """,
                (now,),
            ).fetchall()
        return [self._to_decision(row) for row in rows]

    def list_decisions_since(self, *, since: str, now: str) -> list[DecisionRecord]:
        """All decisions created in the window plus every decision still active."""
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT id, uuid, alert_id, created_at, stop_at, value, type, origin, scenario, raw_data
                FROM decisions
                WHERE created_at >= ? OR stop_at > ?
                ORDER BY stop_at DESC
                """,
                (since, now),
            ).fetchall()
        return [self._to_decision(row) for row in rows]

    def get_decision(self, decision_id: str) -> DecisionRecord | None:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT id, uuid, alert_id, created_at, stop_at, value, type, origin, scenario, raw_data
                FROM decisions WHERE id = ?
                """,
                (str(decision_id),),
            ).fetchone()
        return self._to_decision(row) if row else None

    def delete_decision(self, decision_id: str) -> int:
        with self._conn() as conn:
            return int(conn.execute("DELETE FROM decisions WHERE id = ?", (str(decision_id),)).rowcount)

    def delete_alert(self, alert_id: int) -> tuple[int, int]:
        with self._conn() as conn:
            decisions = conn.execute("DELETE FROM decisions WHERE alert_id = ?", (alert_id,)).rowcount
            alerts = conn.execute("DELETE FROM alerts WHERE id = ?", (alert_id,)).rowcount
        return int(alerts), int(decisions)

    def clear(self) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM alerts")
            conn.execute("DELETE FROM decisions")

    def counts(self) -> tuple[int, int]:
        with self._conn() as conn:
            alerts = conn.execute("SELECT COUNT(1) AS cnt FROM alerts").fetchone()
            decisions = conn.execute("SELECT COUNT(1) AS cnt FROM decisions").fetchone()
        return int(alerts["cnt"] or 0), int(decisions["cnt"] or 0)

    def get_meta(self, key: str) -> str | None:
        with self._conn() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return str(row["value"]) if row and row["value"] is not None else None

    def set_meta(self, key: str, value: str) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO meta(key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )

    @staticmethod
    def _alert_params(alert: AlertRecord) -> tuple:
        return (
            alert.id,
            alert.uuid,
            alert.created_at,
            alert.scenario,
            alert.source_ip,
            alert.message,
            alert.target,
            json.dumps(alert.raw, ensure_ascii=False, default=str),
        )

    @staticmethod
    def _decision_params(decision: DecisionRecord) -> tuple:
        return (
            decision.id,
            decision.uuid,
            decision.alert_id,
            decision.created_at,
            decision.stop_at,
            decision.value,
            decision.type,
            decision.origin,
            decision.scenario,
            json.dumps(decision.raw, ensure_ascii=False, default=str),
        )

    @staticmethod
    def _load_raw(text: object) -> dict:
        if not text:
            return {}
        try:
            parsed = json.loads(str(text))
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _to_alert(self, row: sqlite3.Row) -> AlertRecord:
        return AlertRecord(
            id=int(row["id"]) if row["id"] is not None else None,
            uuid=row["uuid"],
            created_at=str(row["created_at"]),
            scenario=str(row["scenario"] or "Unknown"),
            source_ip=str(row["source_ip"] or "Unknown"),
            message=str(row["message"] or ""),
            target=str(row["target"] or "Unknown"),
            raw=self._load_raw(row["raw_data"]),
        )

    def _to_decision(self, row: sqlite3.Row) -> DecisionRecord:
        return DecisionRecord(
            id=str(row["id"]),
            uuid=row["uuid"],
            alert_id=int(row["alert_id"]) if row["alert_id"] is not None else None,
            created_at=str(row["created_at"]),
            stop_at=str(row["stop_at"]),
            value=str(row["value"] or ""),
            type=str(row["type"] or ""),
            origin=str(row["origin"] or ""),
            scenario=str(row["scenario"] or "Unknown"),
            raw=self._load_raw(row["raw_data"]),
        )
