import logging
from typing import Dict, Iterable, List, Optional

from config import AUTH_MODES
from database import AccessRequest, ApprovedUser, now_ms
from exceptions import AlreadyApproved, RequestAlreadyPending, StorageFault

logger = logging.getLogger(__name__)

PENDING = 'pending'
APPROVED = 'approved'
REJECTED = 'rejected'


class AccessLedger:
    """Who may obtain a configuration.

    Per user the request moves through none -> pending -> approved/rejected;
    a rejected user may ask again. An approval also writes an
    ``approved_users`` row, and both rows are always changed in the same
    transaction.
    """

    def __init__(self, db, auth_mode: str, admin_ids: Iterable[int], allowed_user_ids: Iterable[int], clock=now_ms):
        if auth_mode not in AUTH_MODES:
            logger.warning(f"Unknown auth mode {auth_mode!r}, falling back to 'closed'")
            auth_mode = 'closed'
        self.db = db
        self.auth_mode = auth_mode
        self.admin_ids = frozenset(admin_ids)
        self.allowed_user_ids = frozenset(allowed_user_ids)
        self.clock = clock
        logger.info(f"Access ledger initialized: mode={auth_mode} admins={len(self.admin_ids)}")

    def is_admin(self, user_id: Optional[int]) -> bool:
        return user_id is not None and user_id in self.admin_ids

    def is_user_approved(self, user_id: int) -> bool:
        with self.db.session_scope() as session:
            return session.get(ApprovedUser, user_id) is not None

    def can_get_config(self, user_id: int) -> bool:
        # Admins can always get configs
        if self.is_admin(user_id):
            return True

        if self.auth_mode == 'open':
            return True
        if self.auth_mode == 'whitelist':
            return user_id in self.allowed_user_ids or self.is_user_approved(user_id)
        if self.auth_mode == 'admin_approval':
            return self.is_user_approved(user_id)
        return False

    def get_access_request(self, user_id: int) -> Optional[AccessRequest]:
        with self.db.session_scope() as session:
            return session.get(AccessRequest, user_id)

    def request_access(self, user_id: int, username: str = None, first_name: str = None,
                       last_name: str = None) -> AccessRequest:
        with self.db.session_scope() as session:
            request = session.get(AccessRequest, user_id)
            if request is not None:
                if request.status == APPROVED:
                    raise AlreadyApproved(f"User {user_id} is already approved")
                if request.status == PENDING:
                    raise RequestAlreadyPending(f"User {user_id} already has a pending request")
            else:
                request = AccessRequest(user_id=user_id)
                session.add(request)

            # A rejected user starts over with a fresh request
            request.username = username
            request.first_name = first_name
            request.last_name = last_name
            request.requested_at = self.clock()
            request.status = PENDING
            request.reviewed_by = None
            request.reviewed_at = None
            request.notes = None

        logger.info(f"Access request created: user={user_id} username={username}")
        return request

    def get_pending_requests(self) -> List[AccessRequest]:
        with self.db.session_scope() as session:
            return (
                session.query(AccessRequest)
                .filter(AccessRequest.status == PENDING)
                .order_by(AccessRequest.requested_at.asc())
                .all()
            )

    def approve_user(self, user_id: int, admin_id: int, notes: str = None) -> bool:
        """Approve whatever request exists for the user.

        Callers check that the request is pending first; concurrent
        approve/reject resolve as last writer wins.
        """
        now = self.clock()
        try:
            with self.db.session_scope() as session:
                request = session.get(AccessRequest, user_id)
                if request is not None:
                    request.status = APPROVED
                    request.reviewed_by = admin_id
                    request.reviewed_at = now
                    request.notes = notes

                approved = session.get(ApprovedUser, user_id)
                if approved is None:
                    approved = ApprovedUser(user_id=user_id)
                    session.add(approved)
                approved.username = request.username if request is not None else None
                approved.approved_by = admin_id
                approved.approved_at = now
                approved.notes = notes
        except StorageFault as e:
            logger.error(f"Error approving user {user_id}: {e}")
            return False

        logger.info(f"User approved: user={user_id} admin={admin_id}")
        return True

    def reject_user(self, user_id: int, admin_id: int, notes: str = None) -> bool:
        try:
            with self.db.session_scope() as session:
                request = session.get(AccessRequest, user_id)
                if request is not None:
                    request.status = REJECTED
                    request.reviewed_by = admin_id
                    request.reviewed_at = self.clock()
                    request.notes = notes
        except StorageFault as e:
            logger.error(f"Error rejecting user {user_id}: {e}")
            return False

        logger.info(f"User rejected: user={user_id} admin={admin_id}")
        return True

    def revoke_access(self, user_id: int, admin_id: int) -> bool:
        try:
            with self.db.session_scope() as session:
                session.query(ApprovedUser).filter(ApprovedUser.user_id == user_id).delete()
                request = session.get(AccessRequest, user_id)
                if request is not None:
                    request.status = REJECTED
                    request.reviewed_by = admin_id
                    request.reviewed_at = self.clock()
        except StorageFault as e:
            logger.error(f"Error revoking access for user {user_id}: {e}")
            return False

        logger.info(f"Access revoked: user={user_id} admin={admin_id}")
        return True

    def get_approved_users(self) -> List[ApprovedUser]:
        with self.db.session_scope() as session:
            return session.query(ApprovedUser).order_by(ApprovedUser.approved_at.desc()).all()

    def get_auth_stats(self) -> Dict[str, object]:
        with self.db.session_scope() as session:
            total_requests = session.query(AccessRequest).count()
            pending_requests = session.query(AccessRequest).filter(AccessRequest.status == PENDING).count()
            approved_users = session.query(ApprovedUser).count()

        return {
            "auth_mode": self.auth_mode,
            "total_requests": total_requests,
            "pending_requests": pending_requests,
            "approved_users": approved_users,
            "whitelist_users": len(self.allowed_user_ids)
        }
