import argparse

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from khata.config import settings
from khata.db import create_schema, make_engine


def main() -> None:
    parser = argparse.ArgumentParser(description="Check the khata database connection.")
    parser.add_argument("--create", action="store_true", help="create the ledger tables if missing")
    args = parser.parse_args()

    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = make_engine(database_url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if args.create:
            create_schema(engine)
            print("Schema OK")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()
