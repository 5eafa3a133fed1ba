import sys
from typing import Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from fxoffice import models  # noqa: F401  registers the tables on Base.metadata
from fxoffice.config import settings
from fxoffice.db import Base


def main(database_url: Optional[str] = None) -> int:
    database_url = database_url or settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        Base.metadata.create_all(bind=engine)
        tables = sorted(inspect(engine).get_table_names())
        print(f"Tables ready: {', '.join(tables)}")
    except SQLAlchemyError as exc:
        print("DB setup FAILED")
        print(exc)
        return 1
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1] if len(sys.argv) > 1 else None))
