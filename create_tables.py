"""
Create the billing schema on the configured database and list its tables.

    python create_tables.py            # create missing tables
    python create_tables.py --reset    # drop everything first (dev only)
"""
import argparse

from sqlalchemy import inspect

from app import create_app, db

# registers every table on db.metadata
import models  # noqa: F401


def main():
    parser = argparse.ArgumentParser(description="Create billing tables.")
    parser.add_argument("--reset", action="store_true", help="Drop all tables before creating them.")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        if args.reset:
            app.logger.warning("[Schema] dropping all tables on %s", db.engine.url.render_as_string(hide_password=True))
            db.drop_all()
        db.create_all()

        tables = sorted(inspect(db.engine).get_table_names())
        print(f"{len(tables)} tables:", ", ".join(tables))


if __name__ == "__main__":
    main()
