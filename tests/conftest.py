"""Shared fixtures: a tiny Santiago GTFS feed and the schedule DB built from it."""

from __future__ import annotations

import zipfile

import pytest

from src.ingest.gtfs import build_schedule_db
from src.ingest.schedule_store import ScheduleStore

# Route 506 runs west -> east along lat -33.45, stops ~930 m apart.
# Route 405 serves exactly the same stops (used for tie-breaking).
# Route 210 runs far to the north-east; route 104 has no trips.
GTFS_FILES = {
    "agency.txt": (
        "agency_id,agency_name,agency_url,agency_timezone\n"
        "RED,Red Metropolitana de Movilidad,https://www.red.cl,America/Santiago\n"
    ),
    "stops.txt": (
        "stop_id,stop_code,stop_name,stop_lat,stop_lon\n"
        "PA101,PA101,Av. Libertador Bernardo O'Higgins / Matucana,-33.4500,-70.7000\n"
        "PA102,PA102,Av. Libertador Bernardo O'Higgins / Cumming,-33.4500,-70.6900\n"
        "PA103,PA103,Av. Libertador Bernardo O'Higgins / Brasil,-33.4500,-70.6800\n"
        "PA104,PA104,Av. Libertador Bernardo O'Higgins / Amunátegui,-33.4500,-70.6700\n"
        "PA105,PA105,Av. Libertador Bernardo O'Higgins / Estado,-33.4500,-70.6600\n"
        "PB201,PB201,Av. Apoquindo / Tomás Moro,-33.4000,-70.5500\n"
        "PB202,PB202,Av. Apoquindo / Padre Hurtado,-33.3900,-70.5400\n"
        "S300,pc300,Av. Vicuña Mackenna / Santa Isabel,-33.4450,-70.6300\n"
        "BAD,PX999,Broken stop,,\n"
    ),
    "routes.txt": (
        "route_id,agency_id,route_short_name,route_long_name,route_type\n"
        "r506,RED,506,Maipú - Peñalolén,3\n"
        "r405,RED,405,,3\n"
        "r210,RED,210,Estación Central - Puente Alto,3\n"
        "r104,RED,104,Sin viajes,3\n"
    ),
    "trips.txt": (
        "route_id,service_id,trip_id,direction_id\n"
        "r506,L,t506-out,0\n"
        "r506,L,t506-ret,1\n"
        "r405,L,t405,0\n"
        "r210,L,t210,0\n"
    ),
    "stop_times.txt": (
        "trip_id,arrival_time,departure_time,stop_id,stop_sequence\n"
        "t506-out,07:00:00,07:00:00,PA101,1\n"
        "t506-out,07:03:00,07:03:00,PA102,2\n"
        "t506-out,,,PA103,3\n"
        "t506-out,07:09:00,07:09:00,PA104,4\n"
        "t506-out,07:12:00,07:12:00,PA105,5\n"
        "t506-ret,08:00:00,08:00:00,PA105,1\n"
        "t506-ret,08:12:00,08:12:00,PA101,2\n"
        "t405,07:00:00,07:00:00,PA101,1\n"
        "t405,07:03:00,07:03:00,PA102,2\n"
        "t405,07:06:00,07:06:00,PA103,3\n"
        "t405,07:09:00,07:09:00,PA104,4\n"
        "t405,07:12:00,07:12:00,PA105,5\n"
        "t210,25:10:00,25:10:00,PB201,1\n"
        "t210,25:20:00,25:20:00,PB202,2\n"
    ),
}


@pytest.fixture
def gtfs_zip(tmp_path):
    path = tmp_path / "santiago-gtfs.zip"
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in GTFS_FILES.items():
            zf.writestr(name, content)
    return path


@pytest.fixture
def schedule_db(tmp_path, gtfs_zip):
    return build_schedule_db(gtfs_zip, tmp_path / "schedule.db")


@pytest.fixture
def store(schedule_db):
    s = ScheduleStore(schedule_db)
    yield s
    s.close()
