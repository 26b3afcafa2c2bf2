from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL

Base = declarative_base()


def make_engine(url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the Bookings service.

    SQLite connections are switched to ``BEGIN IMMEDIATE`` transactions so
    that every atomic unit takes the database write lock up front. Without
    this, pysqlite defers BEGIN until the first write and two concurrent
    bookings could both pass the overlap scan.

    Parameters
    ----------
    url : str
        SQLAlchemy database URL.

    Returns
    -------
    Engine
        Configured engine.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(bind: Engine) -> sessionmaker:
    # expire_on_commit=False keeps returned bookings readable after commit
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine(DATABASE_URL)

SessionLocal = make_session_factory(engine)


def get_db():
    """
    Yield a SQLAlchemy database session for the Bookings service.

    This function is used as a FastAPI dependency, creating a scoped
    session per HTTP request and ensuring it is closed afterwards.

    Yields
    ------
    Session
        Active SQLAlchemy session bound to the bookings database engine.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
