import sqlite3
from contextlib import contextmanager
from pathlib import Path

from quillsync.core.errors import StorageUnavailable


def get_conn(db_path: str):
    try:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(db_path, timeout=10)
    except (OSError, sqlite3.Error) as e:
        raise StorageUnavailable(f"{db_path}: {e}") from e
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(db_path: str):
    """Yield a connection; commit on success, roll back on any error.

    Every ``sqlite3.Error`` raised inside the block is re-raised as
    ``StorageUnavailable`` so callers only deal with one storage failure type.
    """
    conn = get_conn(db_path)
    try:
        yield conn
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise StorageUnavailable(str(e)) from e
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str):
    with transaction(db_path) as conn:
        cur = conn.cursor()

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS books (
              name TEXT PRIMARY KEY,
              config_json TEXT NOT NULL,
              last_modified INTEGER NOT NULL,
              sync_state TEXT NOT NULL DEFAULT 'pending'
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS chapters (
              key TEXT PRIMARY KEY,
              book_name TEXT NOT NULL,
              file_name TEXT NOT NULL,
              content TEXT NOT NULL,
              last_modified INTEGER NOT NULL,
              sync_state TEXT NOT NULL DEFAULT 'pending'
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_metadata (
              remote_path TEXT PRIMARY KEY,
              remote_file_id TEXT NOT NULL,
              last_sync_time INTEGER NOT NULL,
              local_last_modified INTEGER NOT NULL,
              remote_last_modified INTEGER NOT NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS app_config (
              key TEXT PRIMARY KEY,
              value_json TEXT,
              last_modified INTEGER NOT NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tombstones (
              remote_path TEXT PRIMARY KEY,
              kind TEXT NOT NULL,
              book_name TEXT NOT NULL,
              file_name TEXT,
              created_at INTEGER NOT NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS conflicts (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              kind TEXT NOT NULL,
              book_name TEXT NOT NULL,
              file_name TEXT,
              discarded_local TEXT,
              remote_value TEXT,
              created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              direction TEXT,
              run_type TEXT,
              status TEXT,
              started_at DATETIME DEFAULT CURRENT_TIMESTAMP,
              finished_at DATETIME,
              summary_json TEXT
            )
            """
        )

        cur.execute("CREATE INDEX IF NOT EXISTS idx_chapters_book_name ON chapters(book_name)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_books_sync_state ON books(sync_state)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_chapters_sync_state ON chapters(sync_state)")
