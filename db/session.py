from __future__ import annotations

from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker

from config import get_settings

settings = get_settings()

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Bootstrap schema for environments without migrations."""
    from allocation.models import Base

    Base.metadata.create_all(bind=bind or engine)


# table -> columns the engine reads; an empty set only requires the table
REQUIRED_SCHEMA: dict[str, set[str]] = {
    "users": {"role", "preferences"},
    "resources": {"capacity", "status", "features", "special_approval"},
    "resource_dependencies": set(),
    "timetables": set(),
    "resource_issues": {"status"},
    "bookings": {"priority", "version_id", "booking_reference"},
}


def schema_gaps(bind=None) -> list[str]:
    """Describe every table or column the engine needs that the database lacks."""
    inspector = inspect(bind or engine)
    existing = set(inspector.get_table_names())
    gaps: list[str] = []
    for table_name, columns in REQUIRED_SCHEMA.items():
        if table_name not in existing:
            gaps.append(f"table {table_name}")
            continue
        present = {column["name"] for column in inspector.get_columns(table_name)}
        gaps.extend(f"column {table_name}.{name}" for name in sorted(columns - present))
    return gaps


def validate_db_compatibility(bind=None) -> None:
    gaps = schema_gaps(bind)
    if gaps:
        raise RuntimeError(
            "Allocation schema is out of date ("
            + ", ".join(gaps)
            + "). Run init_db() or apply migrations before accepting bookings."
        )
