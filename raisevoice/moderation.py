# Per-user moderation status machine: active -> warned -> blocked, unblock -> active

import logging
from typing import Union

from .config import DEFAULT_BLOCK_REASON, now_utc
from .errors import NotFound, ValidationError
from .gateway import PersistenceGateway
from .models import ModerationStatus, NotificationKind, User
from .notifications import NotificationDispatcher
from .users import COLLECTION, UserDirectory, require_admin

logger = logging.getLogger(__name__)


class ModerationState:
    def __init__(self, gateway: PersistenceGateway, users: UserDirectory,
                 notifications: NotificationDispatcher):
        self.gateway = gateway
        self.users = users
        self.notifications = notifications

    def is_blocked(self, user: Union[User, str]) -> bool:
        if isinstance(user, str):
            user = self.users.find(user)
            if user is None:
                return False
        return user.moderation.status == ModerationStatus.BLOCKED

    def status_of(self, user_id: str) -> ModerationStatus:
        return ModerationStatus(self.users.get(user_id).moderation.status)

    def warn(self, user_id: str, reason: str, admin: User) -> User:
        """Increment the warning counter and mark the user warned. Not allowed while blocked."""
        require_admin(admin, "warn users")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A warning reason is required")
        user = self.users.get(user_id)
        if user.moderation.status == ModerationStatus.BLOCKED:
            raise ValidationError("Blocked users cannot be warned; unblock them first")
        moderation = user.moderation.model_copy(update={
            "status": ModerationStatus.WARNED.value,
            "warnings": user.moderation.warnings + 1,
            "warning_reason": reason,
            "last_warning_date": now_utc(),
        })
        user = self._save(user, moderation)
        logger.info("Admin %s warned user %s (warnings=%d)", admin.id, user_id, moderation.warnings)
        self.notifications.dispatch(
            user_id, NotificationKind.WARNING,
            f"You have received a warning. Reason: {reason}",
            {"warnings": moderation.warnings})
        return user

    def block(self, user_id: str, reason: str, admin: User) -> User:
        require_admin(admin, "block users")
        reason = (reason or "").strip() or DEFAULT_BLOCK_REASON
        user = self.users.get(user_id)
        if user.id == admin.id:
            raise ValidationError("Administrators cannot block themselves")
        moderation = user.moderation.model_copy(update={
            "status": ModerationStatus.BLOCKED.value,
            "block_reason": reason,
            "block_date": now_utc(),
        })
        user = self._save(user, moderation)
        logger.info("Admin %s blocked user %s: %s", admin.id, user_id, reason)
        self.notifications.dispatch(
            user_id, NotificationKind.BLOCKED,
            f"Your account has been blocked. Reason: {reason}")
        return user

    def unblock(self, user_id: str, admin: User) -> User:
        """Return a blocked user to active. The warning count is kept."""
        require_admin(admin, "unblock users")
        user = self.users.get(user_id)
        if user.moderation.status != ModerationStatus.BLOCKED:
            raise ValidationError("User is not blocked")
        moderation = user.moderation.model_copy(update={
            "status": ModerationStatus.ACTIVE.value,
            "unblock_date": now_utc(),
        })
        user = self._save(user, moderation)
        logger.info("Admin %s unblocked user %s", admin.id, user_id)
        self.notifications.dispatch(
            user_id, NotificationKind.UNBLOCKED, "Your account has been unblocked.")
        return user

    def _save(self, user: User, moderation) -> User:
        if not self.gateway.update(f"{COLLECTION}/{user.id}", {"moderation": moderation.to_doc()}):
            raise NotFound(f"User {user.id} not found")
        return user.model_copy(update={"moderation": moderation})
