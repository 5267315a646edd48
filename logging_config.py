# logging_config.py

import logging
import sqlite3
import sys
from contextlib import closing
from datetime import datetime, timezone
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
MAX_LOG_ENTRIES = 10000  # Maximum number of log rows kept in the database


class SQLiteHandler(logging.Handler):
    """Writes log records to a bounded SQLite table, pruning the oldest rows."""

    def __init__(self, db_path: str, max_entries: int = MAX_LOG_ENTRIES):
        super().__init__()
        self.db_path = db_path
        self.max_entries = max_entries
        self.create_table()

    def create_table(self):
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    level TEXT NOT NULL,
                    message TEXT NOT NULL,
                    module TEXT,
                    exception TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_id ON logs (id DESC)")
            conn.commit()

    def emit(self, record):
        try:
            log_entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "message": record.getMessage(),
                "module": record.module,
                "exception": self.formatter.formatException(record.exc_info)
                if record.exc_info and self.formatter else record.exc_text,
            }
            with closing(sqlite3.connect(self.db_path)) as conn:
                conn.execute("""
                    INSERT INTO logs (timestamp, level, message, module, exception)
                    VALUES (:timestamp, :level, :message, :module, :exception)
                """, log_entry)

                count = conn.execute("SELECT COUNT(*) FROM logs").fetchone()[0]
                if count > self.max_entries:
                    conn.execute("""
                        DELETE FROM logs
                        WHERE id IN (
                            SELECT id FROM logs
                            ORDER BY id ASC
                            LIMIT ?
                        )
                    """, (count - self.max_entries,))
                conn.commit()
        except Exception:
            self.handleError(record)


def setup_logging(debug: bool = False, log_db_path: Optional[str] = None):
    logger = logging.getLogger()
    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)

    # Safe to call again: existing handlers are re-levelled, not duplicated.
    for handler in logger.handlers:
        if getattr(handler, "_pushhook", False) or isinstance(handler, SQLiteHandler):
            handler.setLevel(level)

    if not any(getattr(h, "_pushhook", False) for h in logger.handlers):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        console_handler._pushhook = True
        logger.addHandler(console_handler)

    if log_db_path and not any(isinstance(h, SQLiteHandler) for h in logger.handlers):
        sqlite_handler = SQLiteHandler(db_path=log_db_path, max_entries=MAX_LOG_ENTRIES)
        sqlite_handler.setLevel(level)
        sqlite_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(sqlite_handler)

