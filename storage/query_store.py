"""
SQLite-backed store for dashboard query records.

Records are saved in whatever shape the caller hands over and are migrated
on every load, before the caller ever sees them.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from api.logging_config import log_migration
from migration.dashboard import is_azure_target, iter_panels
from migration.defaults import apply_defaults
from migration.engine import QueryMigrationEngine

logger = logging.getLogger(__name__)


class QueryNotFoundError(KeyError):
    """No stored query for the given dashboard/panel/refId"""
    pass


class QueryStore:
    """Manager for stored dashboard query records"""

    def __init__(
        self,
        db_path: str,
        engine: Optional[QueryMigrationEngine] = None,
        apply_query_defaults: bool = True,
        persist_on_load: bool = False
    ):
        self.db_path = db_path
        self.engine = engine or QueryMigrationEngine()
        self.apply_query_defaults = apply_query_defaults
        self.persist_on_load = persist_on_load
        self._init_tables()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_tables(self):
        """Initialize query tables"""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = self._connect()
        try:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS dashboard_queries (
                    dashboard_uid TEXT NOT NULL,
                    panel_id INTEGER NOT NULL,
                    ref_id TEXT NOT NULL,
                    query_json TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (dashboard_uid, panel_id, ref_id)
                )
            ''')
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Query store initialized: {self.db_path}")

    def save_query(self, dashboard_uid: str, panel_id: int, record: Dict[str, Any]) -> str:
        """
        Insert or replace a query record.

        Returns:
            The record's refId (used as part of the key)
        """
        if not isinstance(record, dict):
            raise ValueError("Query record must be an object")

        ref_id = record.get("refId")
        if not ref_id:
            raise ValueError("Query record has no refId")

        conn = self._connect()
        try:
            conn.execute('''
                INSERT INTO dashboard_queries (dashboard_uid, panel_id, ref_id, query_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(dashboard_uid, panel_id, ref_id) DO UPDATE SET
                    query_json = excluded.query_json,
                    updated_at = excluded.updated_at
            ''', (dashboard_uid, panel_id, ref_id, json.dumps(record), datetime.now(timezone.utc).isoformat()))
            conn.commit()
        finally:
            conn.close()

        logger.debug(f"Saved query {dashboard_uid}/{panel_id}/{ref_id}")
        return ref_id

    def _fetch_raw(self, dashboard_uid: str, panel_id: int, ref_id: str) -> sqlite3.Row:
        conn = self._connect()
        try:
            row = conn.execute('''
                SELECT dashboard_uid, panel_id, ref_id, query_json, updated_at
                FROM dashboard_queries
                WHERE dashboard_uid = ? AND panel_id = ? AND ref_id = ?
            ''', (dashboard_uid, panel_id, ref_id)).fetchone()
        finally:
            conn.close()

        if row is None:
            raise QueryNotFoundError(f"No query {ref_id} for dashboard {dashboard_uid} panel {panel_id}")
        return row

    def load_raw_query(self, dashboard_uid: str, panel_id: int, ref_id: str) -> Dict[str, Any]:
        """Stored record exactly as persisted (no defaults, no migration)"""
        return json.loads(self._fetch_raw(dashboard_uid, panel_id, ref_id)["query_json"])

    def _prepare(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if self.apply_query_defaults:
            record = apply_defaults(record)

        result = self.engine.migrate_with_report(record)
        log_migration(
            logger,
            result.record.get("refId"),
            result.applied_steps,
            result.remaining_legacy_fields,
            result.duration_ms
        )
        return result.record

    def load_query(
        self,
        dashboard_uid: str,
        panel_id: int,
        ref_id: str,
        persist: Optional[bool] = None
    ) -> Dict[str, Any]:
        """
        Load a query record, fully migrated to the current schema.

        Args:
            persist: Write the migrated shape back (default: store setting)

        Raises:
            QueryNotFoundError: If no such record is stored
        """
        raw = self.load_raw_query(dashboard_uid, panel_id, ref_id)
        record = self._prepare(raw)

        should_persist = self.persist_on_load if persist is None else persist
        if should_persist and record != raw:
            self.save_query(dashboard_uid, panel_id, record)

        return record

    def list_queries(self, dashboard_uid: str) -> List[Dict[str, Any]]:
        """All queries of a dashboard, migrated, ordered by panel and refId"""
        conn = self._connect()
        try:
            rows = conn.execute('''
                SELECT dashboard_uid, panel_id, ref_id, query_json, updated_at
                FROM dashboard_queries
                WHERE dashboard_uid = ?
                ORDER BY panel_id, ref_id
            ''', (dashboard_uid,)).fetchall()
        finally:
            conn.close()

        return [
            {
                "dashboard_uid": row["dashboard_uid"],
                "panel_id": row["panel_id"],
                "ref_id": row["ref_id"],
                "query": self._prepare(json.loads(row["query_json"])),
                "updated_at": row["updated_at"],
            }
            for row in rows
        ]

    def delete_query(self, dashboard_uid: str, panel_id: int, ref_id: str) -> bool:
        """Delete a stored query; False if it did not exist"""
        conn = self._connect()
        try:
            cursor = conn.execute('''
                DELETE FROM dashboard_queries
                WHERE dashboard_uid = ? AND panel_id = ? AND ref_id = ?
            ''', (dashboard_uid, panel_id, ref_id))
            conn.commit()
            deleted = cursor.rowcount > 0
        finally:
            conn.close()

        if deleted:
            logger.info(f"Deleted query {dashboard_uid}/{panel_id}/{ref_id}")
        return deleted

    def import_dashboard(self, dashboard: Dict[str, Any]) -> int:
        """
        Store every Azure Monitor target of a dashboard as persisted.

        Returns:
            Number of targets stored
        """
        root = dashboard.get("dashboard") if isinstance(dashboard.get("dashboard"), dict) else dashboard
        dashboard_uid = root.get("uid")
        if not dashboard_uid:
            raise ValueError("Dashboard has no uid")

        stored = 0
        for panel in iter_panels(root.get("panels")):
            panel_id = panel.get("id")
            if panel_id is None:
                continue
            for target in panel.get("targets") or []:
                if is_azure_target(target) and target.get("refId"):
                    self.save_query(dashboard_uid, panel_id, target)
                    stored += 1

        logger.info(f"Imported {stored} queries from dashboard {dashboard_uid}")
        return stored
