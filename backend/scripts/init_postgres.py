"""
Check the PostgreSQL database for the clinic backend and, optionally, apply the schema.
Run once before starting the app: python scripts/init_postgres.py [--create-tables]

Requires: PostgreSQL installed and running. Create user and database:

  sudo -u postgres psql
  CREATE USER nutriclinic WITH PASSWORD 'nutriclinic';
  CREATE DATABASE nutriclinic_db OWNER nutriclinic;
  GRANT ALL PRIVILEGES ON DATABASE nutriclinic_db TO nutriclinic;
  \q

Production deployments should prefer `alembic upgrade head`; --create-tables
is for local bootstrap only.
"""

import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from nutriclinic.config import settings
from nutriclinic.core.database import Base, build_engine


def main():
    url = settings.get_database_url()
    if not url.startswith("postgresql"):
        print("Database URL is not PostgreSQL. Skipping.")
        return
    engine = build_engine(url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("PostgreSQL connection OK. Database exists.")
    except SQLAlchemyError as e:
        print(f"Cannot connect to PostgreSQL: {e}")
        print("\nCreate database first:")
        print("  psql -U postgres -c \"CREATE USER nutriclinic WITH PASSWORD 'nutriclinic';\"")
        print("  psql -U postgres -c \"CREATE DATABASE nutriclinic_db OWNER nutriclinic;\"")
        print("  psql -U postgres -c \"GRANT ALL PRIVILEGES ON DATABASE nutriclinic_db TO nutriclinic;\"")
        sys.exit(1)

    if "--create-tables" in sys.argv[1:]:
        Base.metadata.create_all(bind=engine)
        print(f"Tables ensured: {', '.join(sorted(Base.metadata.tables))}")

if __name__ == "__main__":
    main()
