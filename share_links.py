"""
Share links
===========
Issuance and redemption of time- and use-limited download links.

Links are never deleted. Expiry, quota exhaustion and admin action only flip
``is_active`` to false, and nothing ever flips it back.

Redemption is a single conditional UPDATE, so two concurrent downloads can
never both take the last remaining use, and the hourly sweep cannot race a
redemption into an inconsistent row.
"""

import logging
import uuid

from sqlalchemy import update

from config import LINK_DOMAIN
from database import ShareLink, UsageLog, now_ms
from exceptions import LinkExpired, LinkNotFound, UsageExceeded

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
MAX_EXPIRY_HOURS = 24 * 365
MAX_USAGE_COUNT = 1_000_000


class ShareLinkLedger:
    def __init__(self, db, link_domain=LINK_DOMAIN, clock=now_ms):
        self.db = db
        self.link_domain = link_domain.rstrip('/')
        self.clock = clock

    def create_link(self, peer_id, expiry_hours, max_usage=1, user_id=None, created_by=None):
        if not peer_id:
            raise ValueError("peer_id is required")
        if not 0 < expiry_hours <= MAX_EXPIRY_HOURS:
            raise ValueError(f"expiry_hours must be in (0, {MAX_EXPIRY_HOURS}], got {expiry_hours}")
        if not 1 <= max_usage <= MAX_USAGE_COUNT:
            raise ValueError(f"max_usage must be in [1, {MAX_USAGE_COUNT}], got {max_usage}")

        link_id = str(uuid.uuid4())
        now = self.clock()
        link = ShareLink(
            id=link_id,
            peer_id=peer_id,
            url=f"{self.link_domain}/download/{link_id}",
            created_at=now,
            expires_at=now + int(expiry_hours * HOUR_MS),
            usage_count=0,
            max_usage_count=max_usage,
            is_active=True,
            user_id=user_id,
            created_by=created_by
        )
        with self.db.session_scope() as session:
            session.add(link)

        logger.info(f"Share link created: id={link_id} peer={peer_id} user={user_id} expiry_hours={expiry_hours}")
        return link

    def get_link(self, link_id):
        with self.db.session_scope() as session:
            return session.get(ShareLink, link_id)

    def check_link(self, link_id):
        """Return the link if it can still be redeemed.

        Does not consume a use. Expired or exhausted links are deactivated
        on the way out.
        """
        now = self.clock()
        with self.db.session_scope() as session:
            link = session.get(ShareLink, link_id)
            error = self._rejection(session, link, now)
        if error:
            raise error
        return link

    def redeem(self, link_id, ip_address=None, user_agent=None):
        """Consume one use of the link and record who used it.

        Raises LinkNotFound, LinkExpired or UsageExceeded when the link is
        not redeemable. Returns the link with its updated usage count.
        """
        now = self.clock()
        with self.db.session_scope() as session:
            result = session.execute(
                update(ShareLink)
                .where(
                    ShareLink.id == link_id,
                    ShareLink.is_active == True,  # noqa: E712
                    ShareLink.usage_count < ShareLink.max_usage_count,
                    ShareLink.expires_at >= now
                )
                .values(usage_count=ShareLink.usage_count + 1)
                .execution_options(synchronize_session=False)
            )
            redeemed = result.rowcount == 1
            if redeemed:
                session.add(UsageLog(
                    link_id=link_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    accessed_at=now
                ))
                link = session.get(ShareLink, link_id)

        if redeemed:
            logger.info(f"Share link redeemed: id={link_id} uses={link.usage_count}/{link.max_usage_count} ip={ip_address}")
            return link

        with self.db.session_scope() as session:
            link = session.get(ShareLink, link_id)
            error = self._rejection(session, link, now) or LinkNotFound(link_id)
        raise error

    def _rejection(self, session, link, now):
        if link is None:
            return LinkNotFound("Link not found")
        if link.is_expired(now):
            self._deactivate(session, link.id)
            return LinkExpired(link.id)
        if link.is_used_up():
            self._deactivate(session, link.id)
            return UsageExceeded(link.id)
        if not link.is_active:
            return LinkNotFound(link.id)
        return None

    @staticmethod
    def _deactivate(session, link_id):
        result = session.execute(
            update(ShareLink)
            .where(ShareLink.id == link_id, ShareLink.is_active == True)  # noqa: E712
            .values(is_active=False)
        )
        return result.rowcount

    def deactivate_link(self, link_id):
        with self.db.session_scope() as session:
            link = session.get(ShareLink, link_id)
            if link is None:
                return False
            self._deactivate(session, link_id)
        logger.info(f"Share link deactivated: id={link_id}")
        return True

    def list_active(self, user_id=None):
        with self.db.session_scope() as session:
            query = session.query(ShareLink).filter(ShareLink.is_active == True)  # noqa: E712
            if user_id is not None:
                query = query.filter(ShareLink.user_id == user_id)
            return query.order_by(ShareLink.created_at.desc()).all()

    def get_usage_logs(self, link_id):
        with self.db.session_scope() as session:
            return (
                session.query(UsageLog)
                .filter(UsageLog.link_id == link_id)
                .order_by(UsageLog.accessed_at.asc(), UsageLog.id.asc())
                .all()
            )

    def cleanup_expired(self):
        """Deactivate every active link past its expiry. Safe to run at any time."""
        now = self.clock()
        with self.db.session_scope() as session:
            result = session.execute(
                update(ShareLink)
                .where(ShareLink.is_active == True, ShareLink.expires_at < now)  # noqa: E712
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount
        if count:
            logger.info(f"Deactivated {count} expired share links")
        return count
