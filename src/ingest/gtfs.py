"""GTFS download and schedule database build for Santiago public transit.

Downloads the DTPM GTFS feed and streams its CSV files into a compact SQLite
database that the :class:`~src.ingest.schedule_store.ScheduleStore` reads.
Unlike a date-specific timetable, the schedule database keeps every trip:
the engine only needs stop sequences and stop coordinates, not departures.
"""

from __future__ import annotations

import csv
import datetime
import io
import logging
import math
import sqlite3
import zipfile
from pathlib import Path
from typing import Iterable, Iterator

import requests

from src.config import (
    GTFS_CACHE_DAYS,
    GTFS_DIR,
    GTFS_URL,
    GTFS_ZIP_PATH,
    SCHEDULE_DB_PATH,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE stops (
        stop_id TEXT PRIMARY KEY,
        stop_code TEXT,
        stop_name TEXT,
        stop_lat REAL,
        stop_lon REAL
    );
    CREATE TABLE routes (
        route_id TEXT PRIMARY KEY,
        short_name TEXT,
        long_name TEXT,
        agency_name TEXT
    );
    CREATE TABLE trips (
        trip_id TEXT PRIMARY KEY,
        route_id TEXT,
        direction_id INTEGER
    );
    CREATE TABLE stop_times (
        trip_id TEXT,
        stop_id TEXT,
        stop_sequence INTEGER,
        arrival_secs INTEGER,
        departure_secs INTEGER
    );
"""

_INDICES = """
    CREATE INDEX idx_stops_code ON stops(UPPER(stop_code));
    CREATE INDEX idx_stops_id_upper ON stops(UPPER(stop_id));
    CREATE INDEX idx_stops_latlon ON stops(stop_lat, stop_lon);
    CREATE INDEX idx_routes_short ON routes(short_name);
    CREATE INDEX idx_trips_route ON trips(route_id);
    CREATE INDEX idx_st_trip_seq ON stop_times(trip_id, stop_sequence);
"""


# ---------------------------------------------------------------------------
# Geometry helpers
# ---------------------------------------------------------------------------

def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the great-circle distance in **meters** between two points."""
    R = 6_371_000  # Earth radius in meters

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


# ---------------------------------------------------------------------------
# GTFS download
# ---------------------------------------------------------------------------

def download_gtfs(url: str = GTFS_URL, dest: Path = GTFS_ZIP_PATH) -> Path:
    """Download the Santiago GTFS zip unless a fresh copy already exists.

    A copy younger than ``GTFS_CACHE_DAYS`` is reused.  The download is
    streamed to a ``.part`` file and renamed on completion so an
    interrupted transfer never leaves a truncated zip behind.

    Returns
    -------
    Path
        Path to the zip file.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)

    if dest.exists():
        age_days = (datetime.datetime.now().timestamp() - dest.stat().st_mtime) / 86_400
        if age_days < GTFS_CACHE_DAYS:
            logger.info(
                "GTFS zip is %.1f days old (< %d); skipping download.",
                age_days,
                GTFS_CACHE_DAYS,
            )
            return dest
        logger.info("GTFS zip is %.1f days old; re-downloading.", age_days)

    logger.info("Downloading GTFS from %s ...", url)
    resp = requests.get(url, stream=True, timeout=300)
    resp.raise_for_status()

    total = int(resp.headers.get("content-length", 0))
    tmp_path = dest.with_suffix(".zip.part")
    downloaded = 0
    last_pct = -1

    try:
        with open(tmp_path, "wb") as f_out:
            for chunk in resp.iter_content(chunk_size=262_144):
                f_out.write(chunk)
                downloaded += len(chunk)
                if total > 0:
                    pct = int(downloaded * 100 / total)
                    if pct >= last_pct + 10:
                        logger.info(
                            "  %.1f / %.1f MB (%d%%)",
                            downloaded / 1_048_576,
                            total / 1_048_576,
                            pct,
                        )
                        last_pct = pct
    except Exception:
        if tmp_path.exists():
            tmp_path.unlink()
        raise

    tmp_path.rename(dest)
    logger.info("GTFS download complete: %s (%.1f MB)", dest, downloaded / 1_048_576)
    return dest


# ---------------------------------------------------------------------------
# Streaming GTFS CSV → SQLite
# ---------------------------------------------------------------------------

def _gtfs_time_to_seconds(time_str: str) -> int:
    """Parse GTFS time "HH:MM:SS" to seconds since midnight (HH may be ≥ 24).

    Blank times (allowed for non-timepoint stops) map to -1.
    """
    time_str = time_str.strip()
    if not time_str:
        return -1
    parts = time_str.split(":")
    return int(parts[0]) * 3600 + int(parts[1]) * 60 + int(parts[2])


def _read_csv(zf: zipfile.ZipFile, name: str) -> Iterator[dict[str, str]]:
    """Yield rows of *name* from the zip, or nothing if the file is absent."""
    if name not in zf.namelist():
        logger.warning("GTFS feed has no %s", name)
        return
    with io.TextIOWrapper(zf.open(name), encoding="utf-8-sig") as f:
        for row in csv.DictReader(f):
            yield {k.strip(): (v or "").strip() for k, v in row.items() if k}


def _insert_batched(
    conn: sqlite3.Connection,
    sql: str,
    rows: Iterable[tuple],
    batch_size: int,
) -> int:
    """Insert *rows* in batches; return the number inserted."""
    batch: list[tuple] = []
    inserted = 0
    for row in rows:
        batch.append(row)
        if len(batch) >= batch_size:
            conn.executemany(sql, batch)
            inserted += len(batch)
            batch.clear()
    if batch:
        conn.executemany(sql, batch)
        inserted += len(batch)
    return inserted


def _stop_rows(zf: zipfile.ZipFile) -> Iterator[tuple]:
    for row in _read_csv(zf, "stops.txt"):
        try:
            slat = float(row.get("stop_lat", 0))
            slon = float(row.get("stop_lon", 0))
        except (ValueError, TypeError):
            continue
        stop_id = row["stop_id"]
        yield (
            stop_id,
            row.get("stop_code") or stop_id,
            row.get("stop_name", ""),
            slat,
            slon,
        )


def _route_rows(zf: zipfile.ZipFile, agency_names: dict[str, str]) -> Iterator[tuple]:
    for row in _read_csv(zf, "routes.txt"):
        yield (
            row["route_id"],
            row.get("route_short_name", ""),
            row.get("route_long_name") or None,
            agency_names.get(row.get("agency_id", ""), ""),
        )


def _trip_rows(zf: zipfile.ZipFile) -> Iterator[tuple]:
    for row in _read_csv(zf, "trips.txt"):
        direction = row.get("direction_id", "")
        yield (
            row["trip_id"],
            row["route_id"],
            int(direction) if direction.isdigit() else None,
        )


def _stop_time_rows(zf: zipfile.ZipFile) -> Iterator[tuple]:
    for row in _read_csv(zf, "stop_times.txt"):
        yield (
            row["trip_id"],
            row["stop_id"],
            int(row["stop_sequence"]),
            _gtfs_time_to_seconds(row.get("arrival_time", "")),
            _gtfs_time_to_seconds(row.get("departure_time", "")),
        )


def build_schedule_db(
    gtfs_path: Path,
    db_path: Path = SCHEDULE_DB_PATH,
    force: bool = False,
) -> Path:
    """Build the schedule SQLite database by streaming CSV from the GTFS zip.

    Parameters
    ----------
    gtfs_path : Path
        Path to the GTFS zip file.
    db_path : Path
        Destination database file.
    force : bool
        Rebuild even when *db_path* already exists.

    Returns
    -------
    Path
        Path to the SQLite database file.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if db_path.exists() and not force:
        logger.info("Schedule DB already exists: %s", db_path)
        return db_path

    logger.info("Building schedule DB %s from %s ...", db_path, gtfs_path)
    tmp_path = db_path.with_suffix(".db.tmp")
    if tmp_path.exists():
        tmp_path.unlink()

    conn = sqlite3.connect(str(tmp_path))
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA cache_size=-20000")  # 20 MB page cache
        conn.executescript(_SCHEMA)

        with zipfile.ZipFile(gtfs_path) as zf:
            agency_names = {
                row.get("agency_id", ""): row.get("agency_name", "")
                for row in _read_csv(zf, "agency.txt")
            }

            n = _insert_batched(
                conn, "INSERT OR IGNORE INTO routes VALUES (?,?,?,?)",
                _route_rows(zf, agency_names), 5000,
            )
            logger.info("Inserted %d routes", n)

            n = _insert_batched(
                conn, "INSERT OR IGNORE INTO trips VALUES (?,?,?)",
                _trip_rows(zf), 10_000,
            )
            logger.info("Inserted %d trips", n)

            n = _insert_batched(
                conn, "INSERT OR IGNORE INTO stops VALUES (?,?,?,?,?)",
                _stop_rows(zf), 10_000,
            )
            logger.info("Inserted %d stops", n)

            n = _insert_batched(
                conn, "INSERT INTO stop_times VALUES (?,?,?,?,?)",
                _stop_time_rows(zf), 50_000,
            )
            logger.info("Inserted %d stop_times", n)

        logger.info("Creating indices ...")
        conn.executescript(_INDICES)
        conn.commit()
        # Readers open the file read-only, which WAL mode does not allow everywhere
        conn.execute("PRAGMA journal_mode=DELETE")
    finally:
        conn.close()

    tmp_path.replace(db_path)
    size_mb = db_path.stat().st_size / (1024 * 1024)
    logger.info("Schedule DB ready: %s (%.1f MB)", db_path, size_mb)
    return db_path


def ensure_schedule_db(force: bool = False) -> Path:
    """Download the feed if needed and build the schedule database."""
    GTFS_DIR.mkdir(parents=True, exist_ok=True)
    gtfs_path = download_gtfs()
    return build_schedule_db(gtfs_path, SCHEDULE_DB_PATH, force=force)
