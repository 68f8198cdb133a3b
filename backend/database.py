# database.py
import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import h3

from .utils import utc_now_iso

DB_PATH = os.getenv("HEXGRID_DB_PATH", "./data/hexgrid.db")
CACHE_MAX_AGE_DAYS = 30
CACHEABLE_STATUSES = ("fetched", "dense")

LOGGER = logging.getLogger(__name__)


def get_db(db_path: Optional[str] = None):
    conn = sqlite3.connect(db_path or DB_PATH)
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Optional[str] = None):
    conn = get_db(db_path)
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS cities (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            state TEXT NOT NULL,
            country TEXT NOT NULL DEFAULT 'USA',
            created_at TEXT NOT NULL,
            UNIQUE(name, state)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS yelp_hextiles (
            h3_id TEXT PRIMARY KEY,
            city_id TEXT,
            status TEXT NOT NULL,
            center_lat REAL NOT NULL,
            center_lng REAL NOT NULL,
            yelp_total_businesses INTEGER,
            staged INTEGER NOT NULL DEFAULT 0,
            resolution INTEGER NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (city_id) REFERENCES cities(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS yelp_import_logs (
            id TEXT PRIMARY KEY,
            city_id TEXT,
            status TEXT NOT NULL,
            total_tiles INTEGER NOT NULL,
            processed_tiles INTEGER NOT NULL DEFAULT 0,
            estimated_api_calls INTEGER NOT NULL,
            actual_api_calls INTEGER NOT NULL DEFAULT 0,
            restaurants_added INTEGER NOT NULL DEFAULT 0,
            tiles_skipped INTEGER NOT NULL DEFAULT 0,
            tiles_fetched INTEGER NOT NULL DEFAULT 0,
            restaurants_fetched INTEGER NOT NULL DEFAULT 0,
            test_mode INTEGER NOT NULL DEFAULT 0,
            start_time TEXT NOT NULL,
            end_time TEXT,
            FOREIGN KEY (city_id) REFERENCES cities(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS yelp_staging (
            id TEXT PRIMARY KEY,
            h3_id TEXT NOT NULL,
            city_id TEXT,
            name TEXT NOT NULL,
            payload TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL
        )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_hextiles_city ON yelp_hextiles(city_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_staging_h3 ON yelp_staging(h3_id)")

    conn.commit()
    conn.close()


def get_hextile_center(h3_id: str) -> Optional[Dict[str, float]]:
    try:
        lat, lng = h3.cell_to_latlng(h3_id)
    except (ValueError, TypeError) as exc:
        LOGGER.error("Error getting hextile center for %s: %s", h3_id, exc)
        return None
    return {"lat": lat, "lng": lng}


class HexgridStore:
    """sqlite-backed persistence for cities, hextiles, import logs and staging.

    Every method opens its own connection, so calls are safe from worker
    threads. Database errors are logged and turned into ``None``/``False``/
    empty results; callers never see an exception from here.
    """

    def __init__(self, db_path: Optional[str] = None, max_age_days: int = CACHE_MAX_AGE_DAYS):
        self.db_path = db_path or DB_PATH
        self.max_age_days = max_age_days

    def init(self) -> None:
        init_db(self.db_path)

    # --- cities ---

    def get_city_by_name(self, name: str, state: str) -> Optional[Dict[str, Any]]:
        try:
            conn = get_db(self.db_path)
            try:
                row = conn.execute(
                    "SELECT * FROM cities WHERE lower(name) = lower(?) AND upper(state) = upper(?)",
                    (name, state),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Error fetching city %s, %s: %s", name, state, exc)
            return None
        return dict(row) if row else None

    def create_city(self, name: str, state: str, country: str = "USA") -> Optional[str]:
        city_id = str(uuid.uuid4())
        try:
            conn = get_db(self.db_path)
            try:
                conn.execute(
                    "INSERT INTO cities (id, name, state, country, created_at) VALUES (?, ?, ?, ?, ?)",
                    (city_id, name, state.upper(), country, utc_now_iso()),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Error creating city %s, %s: %s", name, state, exc)
            return None
        return city_id

    # --- hextiles ---

    def get_hextile(self, h3_id: str) -> Optional[Dict[str, Any]]:
        try:
            conn = get_db(self.db_path)
            try:
                row = conn.execute("SELECT * FROM yelp_hextiles WHERE h3_id = ?", (h3_id,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Error fetching hextile %s: %s", h3_id, exc)
            return None
        return dict(row) if row else None

    def get_valid_hextile(self, h3_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Return the cached hextile if it was fetched successfully within the freshness window."""
        hextile = self.get_hextile(h3_id)
        if hextile is None:
            return None

        now = now or datetime.now(timezone.utc)
        created_at = datetime.fromisoformat(hextile["created_at"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        if now - created_at > timedelta(days=self.max_age_days):
            return None

        if hextile["status"] not in CACHEABLE_STATUSES:
            return None
        return hextile

    def upsert_hextile(
        self,
        h3_id: str,
        city_id: Optional[str],
        status: str,
        resolution: int,
        yelp_total_businesses: Optional[int] = None,
        staged: Optional[int] = None,
        retry_count: Optional[int] = None,
    ) -> Optional[str]:
        """Create or update a hextile.

        ``yelp_total_businesses`` is only written while it is still NULL, so the
        first successful count sticks; updates otherwise touch the bookkeeping
        columns (status, staged, retry_count).
        """
        center = get_hextile_center(h3_id)
        if center is None:
            return None

        now = utc_now_iso()
        try:
            conn = get_db(self.db_path)
            try:
                existing = conn.execute(
                    "SELECT staged, retry_count FROM yelp_hextiles WHERE h3_id = ?", (h3_id,)
                ).fetchone()
                if existing:
                    conn.execute(
                        """
                        UPDATE yelp_hextiles
                        SET status = ?, yelp_total_businesses = COALESCE(yelp_total_businesses, ?),
                            staged = ?, retry_count = ?, updated_at = ?
                        WHERE h3_id = ?
                        """,
                        (
                            status,
                            yelp_total_businesses,
                            staged if staged is not None else existing["staged"],
                            retry_count if retry_count is not None else existing["retry_count"],
                            now,
                            h3_id,
                        ),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO yelp_hextiles (
                            h3_id, city_id, status, center_lat, center_lng, yelp_total_businesses,
                            staged, resolution, retry_count, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            h3_id,
                            city_id,
                            status,
                            center["lat"],
                            center["lng"],
                            yelp_total_businesses,
                            staged or 0,
                            resolution,
                            retry_count or 0,
                            now,
                            now,
                        ),
                    )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Error upserting hextile %s: %s", h3_id, exc)
            return None
        return h3_id

    def get_hextiles_by_city(self, city_id: str) -> List[Dict[str, Any]]:
        try:
            conn = get_db(self.db_path)
            try:
                rows = conn.execute(
                    "SELECT * FROM yelp_hextiles WHERE city_id = ? ORDER BY h3_id", (city_id,)
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Error fetching hextiles for city %s: %s", city_id, exc)
            return []
        return [dict(r) for r in rows]

    # --- import logs ---

    def create_import_log(
        self,
        city_id: Optional[str],
        total_tiles: int,
        estimated_api_calls: int,
        test_mode: bool = False,
    ) -> Optional[str]:
        log_id = str(uuid.uuid4())
        try:
            conn = get_db(self.db_path)
            try:
                conn.execute(
                    """
                    INSERT INTO yelp_import_logs (
                        id, city_id, status, total_tiles, estimated_api_calls, test_mode, start_time
                    ) VALUES (?, ?, 'running', ?, ?, ?, ?)
                    """,
                    (log_id, city_id, total_tiles, estimated_api_calls, 1 if test_mode else 0, utc_now_iso()),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Error creating import log for city %s: %s", city_id, exc)
            return None
        return log_id

    def update_import_log(self, log_id: str, **updates: Any) -> bool:
        allowed = {
            "status",
            "processed_tiles",
            "actual_api_calls",
            "restaurants_added",
            "tiles_skipped",
            "tiles_fetched",
            "restaurants_fetched",
            "end_time",
        }
        fields = {k: v for k, v in updates.items() if k in allowed}
        if fields.get("status") in ("complete", "failed") and "end_time" not in fields:
            fields["end_time"] = utc_now_iso()
        if not fields:
            return True

        assignments = ", ".join(f"{k} = ?" for k in fields)
        try:
            conn = get_db(self.db_path)
            try:
                conn.execute(
                    f"UPDATE yelp_import_logs SET {assignments} WHERE id = ?",
                    (*fields.values(), log_id),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Error updating import log %s: %s", log_id, exc)
            return False
        return True

    def get_import_log(self, log_id: str) -> Optional[Dict[str, Any]]:
        try:
            conn = get_db(self.db_path)
            try:
                row = conn.execute("SELECT * FROM yelp_import_logs WHERE id = ?", (log_id,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Error fetching import log %s: %s", log_id, exc)
            return None
        return dict(row) if row else None

    # --- staging ---

    def stage_businesses(self, h3_id: str, city_id: Optional[str], businesses: List[Dict[str, Any]]) -> int:
        """Stage approved businesses for a hextile. Returns the number of new rows."""
        inserted = 0
        try:
            conn = get_db(self.db_path)
            try:
                cur = conn.cursor()
                for business in businesses:
                    business_id = business.get("id")
                    if not business_id:
                        continue
                    cur.execute(
                        """
                        INSERT OR IGNORE INTO yelp_staging (id, h3_id, city_id, name, payload, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            str(business_id),
                            h3_id,
                            city_id,
                            str(business.get("name") or "Unnamed"),
                            json.dumps(business),
                            utc_now_iso(),
                        ),
                    )
                    if cur.rowcount and cur.rowcount > 0:
                        inserted += 1
                staged = cur.execute("SELECT COUNT(*) FROM yelp_staging WHERE h3_id = ?", (h3_id,)).fetchone()[0]
                cur.execute(
                    "UPDATE yelp_hextiles SET staged = ?, updated_at = ? WHERE h3_id = ?",
                    (int(staged), utc_now_iso(), h3_id),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Error staging businesses for %s: %s", h3_id, exc)
            return 0
        return inserted

    def get_staged_businesses(self, h3_id: str) -> List[Dict[str, Any]]:
        try:
            conn = get_db(self.db_path)
            try:
                rows = conn.execute(
                    "SELECT payload FROM yelp_staging WHERE h3_id = ? ORDER BY created_at, id", (h3_id,)
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Error loading staged businesses for %s: %s", h3_id, exc)
            return []

        businesses = []
        for row in rows:
            business = json.loads(row["payload"])
            business["h3Id"] = h3_id
            businesses.append(business)
        return businesses
