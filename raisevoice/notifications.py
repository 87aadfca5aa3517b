# Fan-out of user-visible notices triggered by lifecycle, credit and moderation actions

import logging
from typing import Any, Callable, Dict, List, Optional

from .config import ADMIN_POOL, now_utc
from .errors import AuthorizationError, NotFound, PersistenceError
from .gateway import PersistenceGateway
from .models import Notification, NotificationKind

logger = logging.getLogger(__name__)

COLLECTION = "notifications"


class NotificationDispatcher:
    def __init__(self, gateway: PersistenceGateway):
        self.gateway = gateway

    def notify(self, recipient_id: str, kind: NotificationKind, message: str,
               context: Optional[Dict[str, Any]] = None) -> Notification:
        """Create one notification. Store failures propagate."""
        key = self.gateway.append(COLLECTION)
        notification = Notification(id=key, recipient_id=recipient_id, kind=kind,
                                    message=message, created_at=now_utc(),
                                    context=context or {})
        self.gateway.write(f"{COLLECTION}/{key}", notification.to_doc())
        logger.debug("Notification %s (%s) -> %s", key, notification.kind, recipient_id)
        return notification

    def dispatch(self, recipient_id: str, kind: NotificationKind, message: str,
                 context: Optional[Dict[str, Any]] = None) -> Optional[Notification]:
        """Best-effort notify issued after a primary mutation has already been written.

        The mutation stays authoritative: a failed notification write is logged
        and reported as ``None``, never rolled back or retried.
        """
        try:
            return self.notify(recipient_id, kind, message, context)
        except PersistenceError:
            logger.exception("Notification %s for %s was not stored", kind, recipient_id)
            return None

    def notify_admins(self, kind: NotificationKind, message: str,
                      context: Optional[Dict[str, Any]] = None) -> Optional[Notification]:
        return self.dispatch(ADMIN_POOL, kind, message, context)

    # -- read side --------------------------------------------------------

    def list_for(self, recipient_id: str, unread_only: bool = False) -> List[Notification]:
        docs = self.gateway.query(COLLECTION, "recipient_id", recipient_id)
        items = [Notification(**doc) for _, doc in sorted(docs.items())]
        items.sort(key=lambda n: (n.created_at, n.id))
        if unread_only:
            items = [n for n in items if not n.read]
        return items

    def unread_count(self, recipient_id: str) -> int:
        return len(self.list_for(recipient_id, unread_only=True))

    def mark_read(self, notification_id: str, reader_id: str,
                  reader_is_admin: bool = False) -> Notification:
        doc = self.gateway.read(f"{COLLECTION}/{notification_id}")
        if doc is None:
            raise NotFound("Notification not found")
        recipient = doc.get("recipient_id")
        if recipient != reader_id and not (recipient == ADMIN_POOL and reader_is_admin):
            raise AuthorizationError("Notification belongs to another user")
        self.gateway.merge(f"{COLLECTION}/{notification_id}", {"read": True})
        doc["read"] = True
        return Notification(**doc)

    def watch(self, recipient_id: str,
              callback: Callable[[Notification], None]) -> Callable[[], None]:
        """Subscribe to new or changed notifications addressed to one recipient."""
        def on_change(path: str, value: Optional[dict]):
            if value and value.get("recipient_id") == recipient_id:
                callback(Notification(**value))
        return self.gateway.subscribe(COLLECTION, on_change)
