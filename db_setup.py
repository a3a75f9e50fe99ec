import sqlite3

from config import settings


def init_db(db_name: str = None):
    conn = sqlite3.connect(db_name or settings.DB_NAME)
    cursor = conn.cursor()

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS Contact (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phoneNumber TEXT,
            email TEXT,
            linkedId INTEGER,
            linkPrecedence TEXT CHECK(linkPrecedence IN ('secondary', 'primary')),
            createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
            updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP,
            deletedAt DATETIME,
            FOREIGN KEY (linkedId) REFERENCES Contact (id)
        )
    ''')
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact (email)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_phone ON Contact (phoneNumber)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_linked ON Contact (linkedId)")
    conn.commit()

    conn.close()


def get_db_connection(db_name: str = None, timeout: float = None):
    """Open a connection in autocommit mode; callers issue BEGIN themselves."""
    conn = sqlite3.connect(
        db_name or settings.DB_NAME,
        timeout=settings.DB_BUSY_TIMEOUT if timeout is None else timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    return conn
