"""Bootstrap an admin account (admins cannot self-register over HTTP).
Usage: python scripts/create_admin.py EMAIL [--first-name NAME] [--last-name NAME]
The password is read from the ADMIN_PASSWORD env var or prompted for.
"""
import os
import sys
import argparse
import getpass
import pathlib
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from researchhub.database import engine, create_db_and_tables
from researchhub import services


def main(email: str, password: str, first_name: str = 'Admin', last_name: str = 'User') -> int:
    create_db_and_tables()
    with Session(engine) as session:
        try:
            user = services.AuthService(session).register(
                email, password, first_name, last_name, role='admin', allow_admin=True
            )
        except (ValueError, services.ConflictError) as e:
            print(f'Could not create admin: {e}')
            return 1
    print(f'Created admin {user.email} (id {user.id})')
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('email')
    parser.add_argument('--first-name', default='Admin')
    parser.add_argument('--last-name', default='User')
    args = parser.parse_args()
    pw = os.getenv('ADMIN_PASSWORD') or getpass.getpass('Password: ')
    sys.exit(main(args.email, pw, args.first_name, args.last_name))
