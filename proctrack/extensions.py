"""
Central place for Flask extensions.

This avoids circular imports and keeps create_app clean.
Extensions are initialized in create_app() in __init__.py, where the app context is available.
"""

from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect
from sqlalchemy import event

# Global extension instances - imported and initialized in create_app() with the app context.
db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()


def enable_sqlite_savepoints(engine) -> None:
    """
    Let pysqlite honour SAVEPOINT inside the session transaction.

    The sqlite3 driver defers BEGIN until the first DML statement, which breaks nested
    transactions (audit writes and idempotency keys rely on them). The recipe from the
    SQLAlchemy SQLite dialect docs: disable the driver's own transaction handling and
    emit BEGIN ourselves.
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")
