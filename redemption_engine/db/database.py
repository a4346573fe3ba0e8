"""
Database connection and session management
"""
from sqlalchemy import create_engine, insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from redemption_engine.config import settings


def build_engine(database_url: str):
    """Create an engine with pool settings appropriate for the backend"""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30}
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20
    )


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def insert_if_absent(db, model, values, index_elements):
    """
    INSERT ... ON CONFLICT DO NOTHING for PostgreSQL and SQLite.

    Other backends fall back to a savepoint around a plain insert.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql_insert(model).values(**values)
        db.execute(stmt.on_conflict_do_nothing(index_elements=index_elements))
    elif dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values)
        db.execute(stmt.on_conflict_do_nothing(index_elements=index_elements))
    else:
        try:
            with db.begin_nested():
                db.execute(insert(model).values(**values))
        except IntegrityError:
            # Row already exists
            pass
