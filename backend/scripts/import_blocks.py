"""CLI script to import question files into a study as blocks.
Usage: python scripts/import_blocks.py STUDY_ID FILE [FILE ...] [--dry-run]
"""
import sys
import argparse
import pathlib
from typing import List
# Ensure `backend/` is on sys.path so `researchhub` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from researchhub.database import engine, create_db_and_tables
from researchhub import services


def main(study_id: int, files: List[pathlib.Path], dry_run: bool = False) -> int:
    """Parse each file and append its questions to the study.

    Results are printed to stdout for a quick CLI feedback loop. Returns
    a process exit code.
    """
    create_db_and_tables()
    with Session(engine) as session:
        svc = services.StudyService(session)
        study = svc.repo.get(study_id)
        if not study:
            print(f'Study {study_id} not found')
            return 1
        total_created = 0
        for f in files:
            if not f.exists():
                print(f'Skipping {f}: file not found')
                continue
            try:
                result = svc.import_blocks(study, f.read_bytes(), f.name, dry_run=dry_run)
            except (ValueError, services.ConflictError) as e:
                print(f'Error importing {f}: {e}')
                continue
            total_created += result['created']
            print(f"Imported {f}: parsed {result['parsed']}, valid {result['valid']}, "
                  f"created {result['created']}, errors {len(result['errors'])}")
            for err in result['errors']:
                print(f"  item {err['index']}: {err['error']}")
        print(f'Total created blocks: {total_created}{" (dry run)" if dry_run else ""}')
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('study_id', type=int, help='Study to append blocks to')
    parser.add_argument('files', nargs='+', type=pathlib.Path, help='JSON, CSV, TXT, PDF or DOCX files')
    parser.add_argument('--dry-run', action='store_true', help='Parse and validate without saving')
    args = parser.parse_args()
    sys.exit(main(args.study_id, args.files, dry_run=args.dry_run))
