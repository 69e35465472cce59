from __future__ import annotations

from sqlalchemy import Engine, text

from healthlog.db.migrations import apply_migrations
from healthlog.db.models import Base


def initialize_database(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
    apply_migrations(engine)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
