import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List

import aiosqlite
from pydantic import ValidationError

from .fusion import bounding_box, haversine_m
from .models import SEVERITY_RANK, HazardRecord

log = logging.getLogger(__name__)

DB_PATH = "hazards.sqlite"

CREATE_SQL = """
CREATE TABLE IF NOT EXISTS hazards (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  description TEXT,
  hazard_type TEXT NOT NULL,
  severity TEXT,
  latitude REAL NOT NULL,
  longitude REAL NOT NULL,
  image_url TEXT,
  status TEXT,
  reported_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_hazards_lat_lon ON hazards (latitude, longitude);
"""

SELECT_SQL = """
SELECT id, description, hazard_type, severity, latitude, longitude, image_url, status, reported_at
FROM hazards
WHERE latitude BETWEEN ? AND ?
  AND longitude BETWEEN ? AND ?
  AND (status IS NULL OR status != 'resolved')
  AND reported_at > ?
"""


async def _prep(db: aiosqlite.Connection):
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute("PRAGMA busy_timeout=7000;")  # 7s
    await db.commit()


async def init_db(db_path: str = DB_PATH):
    async with aiosqlite.connect(db_path, timeout=15) as db:
        await _prep(db)
        for stmt in CREATE_SQL.strip().split(";"):
            s = stmt.strip()
            if s:
                await db.execute(s)
        await db.commit()


def _row_to_hazard(row, lat: float, lon: float) -> HazardRecord:
    severity = row["severity"] if row["severity"] in SEVERITY_RANK else "medium"
    return HazardRecord(
        id=row["id"],
        source="community",
        type=row["hazard_type"],
        severity=severity,
        latitude=row["latitude"],
        longitude=row["longitude"],
        description=row["description"] or "",
        reported_at=row["reported_at"],
        verified=False,
        status=row["status"],
        distance_meters=round(haversine_m(lat, lon, row["latitude"], row["longitude"])),
        metadata={"image_url": row["image_url"]} if row["image_url"] else {},
    )


async def fetch_community_hazards(
    lat: float,
    lon: float,
    radius_m: float,
    limit: int = 100,
    max_age_days: int = 182,
    db_path: str = DB_PATH,
) -> List[HazardRecord]:
    """Unresolved, recent community reports within ``radius_m``, nearest first.

    Database errors propagate; a single unreadable row is skipped.
    """
    box = bounding_box(lat, lon, radius_m)
    cutoff = (datetime.now(timezone.utc) - timedelta(days=max_age_days)).isoformat()
    args = (box["min_lat"], box["max_lat"], box["min_lon"], box["max_lon"], cutoff)

    for attempt in range(3):  # simple retry on a locked database
        try:
            async with aiosqlite.connect(db_path, timeout=15) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(SELECT_SQL, args) as cur:
                    rows = await cur.fetchall()
            break
        except aiosqlite.OperationalError:
            if attempt == 2:
                raise
            await asyncio.sleep(0.2)

    hazards = []
    for row in rows:
        try:
            h = _row_to_hazard(row, lat, lon)
        except (ValidationError, TypeError, ValueError) as e:
            log.warning(f"[DB] skipping unreadable hazard row {row['id']}: {e}")
            continue
        if h.distance_meters <= radius_m:
            hazards.append(h)

    hazards.sort(key=lambda h: (h.distance_meters, -(h.reported_at.timestamp() if h.reported_at else 0)))
    return hazards[:limit]
