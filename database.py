from contextlib import contextmanager
import logging
import time

from sqlalchemy import (
    BigInteger, Boolean, Column, ForeignKey, Index, Integer, String, Text,
    create_engine, event, text
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from exceptions import StorageFault

logger = logging.getLogger(__name__)

# Declare base for using SQLAlchemy
Base = declarative_base()


def now_ms():
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


# ShareLink model
class ShareLink(Base):
    __tablename__ = 'share_links'

    id = Column(String, primary_key=True)
    peer_id = Column(String, nullable=False, index=True)
    url = Column(String, nullable=False)
    created_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False, index=True)
    usage_count = Column(Integer, nullable=False, default=0, server_default='0')
    max_usage_count = Column(Integer, nullable=False, default=1, server_default='1')
    is_active = Column(Boolean, nullable=False, default=True, server_default='1', index=True)
    user_id = Column(BigInteger)
    created_by = Column(String)

    def is_expired(self, at=None):
        return (at if at is not None else now_ms()) > self.expires_at

    def is_used_up(self):
        return self.usage_count >= self.max_usage_count

    def to_dict(self):
        return {
            "id": self.id,
            "peerId": self.peer_id,
            "url": self.url,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "usageCount": self.usage_count,
            "maxUsageCount": self.max_usage_count,
            "isActive": bool(self.is_active),
            "userId": self.user_id,
            "createdBy": self.created_by
        }

    def __repr__(self):
        return f"<ShareLink {self.id} peer={self.peer_id} uses={self.usage_count}/{self.max_usage_count}>"


# UsageLog model, append-only
class UsageLog(Base):
    __tablename__ = 'usage_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    link_id = Column(String, ForeignKey('share_links.id'), nullable=False, index=True)
    ip_address = Column(String)
    user_agent = Column(String)
    accessed_at = Column(BigInteger, nullable=False)


# AccessRequest model, one row per user
class AccessRequest(Base):
    __tablename__ = 'access_requests'

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    username = Column(String)
    first_name = Column(String)
    last_name = Column(String)
    requested_at = Column(BigInteger, nullable=False)
    status = Column(String, nullable=False)
    reviewed_by = Column(BigInteger)
    reviewed_at = Column(BigInteger)
    notes = Column(Text)

    __table_args__ = (
        Index('idx_access_requests_status', 'status'),
    )


# ApprovedUser model
class ApprovedUser(Base):
    __tablename__ = 'approved_users'

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    username = Column(String)
    approved_by = Column(BigInteger, nullable=False)
    approved_at = Column(BigInteger, nullable=False)
    notes = Column(Text)

    __table_args__ = (
        Index('idx_approved_users_approved_at', 'approved_at'),
    )


def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


class Database:
    def __init__(self, db_url):
        engine_kwargs = {}
        is_sqlite = db_url.startswith('sqlite')
        if is_sqlite:
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if db_url in ('sqlite://', 'sqlite:///:memory:'):
                # one shared connection, otherwise every session sees an empty database
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(db_url, **engine_kwargs)
        if is_sqlite:
            event.listen(self.engine, "connect", _set_sqlite_pragma)

        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def session_scope(self):
        """Session that commits on success and turns database errors into StorageFault."""
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise StorageFault(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self):
        with self.session_scope() as session:
            session.execute(text("SELECT 1"))
        return True

    def close(self):
        self.engine.dispose()
