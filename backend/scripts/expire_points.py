"""Run the points expiry sweep once (intended for cron).
Usage: python scripts/expire_points.py
"""
import sys
import logging
import pathlib
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from researchhub.database import engine, create_db_and_tables
from researchhub import services


def main():
    create_db_and_tables()
    with Session(engine) as session:
        result = services.PointsService(session).expire()
    print(f"Processed {result['processed']} expired assignments, expired {result['expired_points']} points")


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    main()
