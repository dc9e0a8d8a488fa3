# rsvpbot/appdb.py
import os
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

DATABASE_URL = os.environ.get("DATABASE_URL")

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set in environment variables")

# Render/Heroku hand out postgres:// URLs; SQLAlchemy 2 only accepts postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = "postgresql://" + DATABASE_URL[len("postgres://"):]

_connect_args = {}
if make_url(DATABASE_URL).get_backend_name() == "sqlite":
    # webhook items run in threadpool workers
    _connect_args["check_same_thread"] = False

engine = create_engine(
    DATABASE_URL,
    future=True,
    pool_pre_ping=True,
    connect_args=_connect_args,
)

if engine.dialect.name == "sqlite":

    @event.listens_for(engine, "connect")
    def _sqlite_manual_transactions(dbapi_connection, connection_record):
        # pysqlite would otherwise issue its own deferred BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin_immediate(conn):
        # take the write lock up front: concurrent webhook transactions queue
        # on the busy timeout instead of deadlocking on lock upgrade
        conn.exec_driver_sql("BEGIN IMMEDIATE")


SessionLocal = sessionmaker(bind=engine, autoflush=False, future=True)


@contextmanager
def get_session():
    """Unit of work around one webhook item or API call.

        with get_session() as session:
            session.execute(...)

    הכל בתוך טרנזקציה אחת: commit ביציאה תקינה, rollback כשנזרקת שגיאה.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def supports_row_locks(session) -> bool:
    """SQLite has no SELECT ... FOR UPDATE; BEGIN IMMEDIATE serialises its transactions."""
    return session.get_bind().dialect.name != "sqlite"
