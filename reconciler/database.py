from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Create base class for models
Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """Create an engine for the configured database URL"""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # SQLite specific
    return create_engine(database_url, connect_args=connect_args)


def build_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory bound to an engine"""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request):
    """Dependency to get database session"""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def create_tables(engine: Engine):
    """Create all database tables"""
    # Import models so they register on the metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def run_with_session(session_factory: sessionmaker, job, *args):
    """Run a background job on its own session; the request session is closed by then"""
    db = session_factory()
    try:
        return job(db, *args)
    finally:
        db.close()
