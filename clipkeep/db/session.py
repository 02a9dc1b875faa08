import os
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session
from clipkeep.core import config

def ensure_folders_exist(sqlite_url: str = config.sqlite_url):
    #checks the sqlite file folder
    if sqlite_url.startswith("sqlite:///"):
        db_dir = os.path.dirname(sqlite_url.replace("sqlite:///", ""))
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)

def build_engine(sqlite_url: str = config.sqlite_url):
    #create the SQLAlchemy to work with SQLite
    #check_same_thread off: the engine is used from the work queue, the OCR queue and the API threads
    engine = create_engine(sqlite_url, echo=False, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    return engine

def init_db(engine, sqlite_url: str = config.sqlite_url):
    """create tables in db on startup"""
    ensure_folders_exist(sqlite_url)
    SQLModel.metadata.create_all(engine)

def get_session(engine):
    """Open DB and return it"""
    return Session(engine, expire_on_commit=False)
