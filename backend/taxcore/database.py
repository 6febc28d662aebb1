# Create Engine
# Make DB Session
from sqlalchemy import create_engine, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, sessionmaker
from taxcore.core.config import settings

# SQLite needs cross-thread access for FastAPI's threadpool
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

# An Engine building a connection with DATABASE using DATABASE URL
engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)

# Session for ORM binded with DATABASE Connection (Engine) to perform the DATABASE Operations
SessionLocal = sessionmaker(bind=engine, autoflush=False)

# Parent class of every table model
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def get_db():

    db = SessionLocal()

    try:
        yield db
    finally:
        db.close()
