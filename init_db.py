import logging
import os

from config import DATABASE_URL
from database import Database

logger = logging.getLogger(__name__)


def init_database(db_url=DATABASE_URL):
    """Create the database file and all tables"""
    prefix = 'sqlite:///'
    path = db_url[len(prefix):] if db_url.startswith(prefix) else ''
    if path and os.path.dirname(path):
        os.makedirs(os.path.dirname(path), exist_ok=True)

    db = Database(db_url)
    db.close()
    logger.info(f"Database tables created: {db_url}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    print("Initializing database...")
    init_database()
    print("Done!")
