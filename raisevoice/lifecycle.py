# Per-grievance status/priority state machine with its comment and timeline log

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from .classifier import Detection, PriorityClassifier
from .config import DEFAULT_BLOCK_REASON, STALE_PENDING_DAYS, now_utc
from .errors import AuthorizationError, Blocked, NotFound, ValidationError
from .gateway import PersistenceGateway
from .models import (PRIORITY_RANK, Comment, Grievance, GrievanceStatus, NotificationKind,
                     Priority, TimelineEntry, TimelineEvent, User)
from .moderation import ModerationState
from .notifications import NotificationDispatcher
from .users import UserDirectory, require_admin

logger = logging.getLogger(__name__)

COLLECTION = "grievances"

# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------
TRANSITIONS: Dict[GrievanceStatus, Set[GrievanceStatus]] = {
    GrievanceStatus.PENDING: {GrievanceStatus.IN_PROGRESS, GrievanceStatus.RESOLVED},
    GrievanceStatus.IN_PROGRESS: {GrievanceStatus.RESOLVED},
    GrievanceStatus.RESOLVED: set(),
}


def check_transition(current: str, target: GrievanceStatus):
    if target not in TRANSITIONS[GrievanceStatus(current)]:
        raise ValidationError(f"Cannot move a {current} grievance to {target.value}")


def clean_submission(title: str, description: str, attachments: Iterable[str] = ()):
    title, description = (title or "").strip(), (description or "").strip()
    if not title or not description:
        raise ValidationError("Please provide both a title and description for your grievance")
    urls = list(attachments)
    if any(not isinstance(u, str) or not u.strip() for u in urls):
        raise ValidationError("Attachment URLs must be non-empty strings")
    return title, description, urls


def can_resubmit(grievance: Grievance) -> bool:
    return (grievance.status != GrievanceStatus.RESOLVED
            and grievance.priority != Priority.URGENT)


class GrievanceLifecycle:
    def __init__(self, gateway: PersistenceGateway, users: UserDirectory,
                 moderation: ModerationState, notifications: NotificationDispatcher,
                 classifier: PriorityClassifier):
        self.gateway = gateway
        self.users = users
        self.moderation = moderation
        self.notifications = notifications
        self.classifier = classifier

    # -- reads ------------------------------------------------------------

    def get(self, grievance_id: str) -> Grievance:
        doc = self.gateway.read(f"{COLLECTION}/{grievance_id}")
        if doc is None:
            raise NotFound("Grievance not found")
        return Grievance(**doc)

    def list_all(self) -> List[Grievance]:
        """Admin queue order: unresolved first, newest first within each group."""
        docs = self.gateway.read(COLLECTION) or {}
        grievances = [Grievance(**d) for d in docs.values()]
        grievances.sort(key=lambda g: (g.created_at, g.id), reverse=True)
        grievances.sort(key=lambda g: g.status == GrievanceStatus.RESOLVED)
        return grievances

    def list_for(self, submitter_id: str) -> List[Grievance]:
        docs = self.gateway.query(COLLECTION, "submitter_id", submitter_id)
        grievances = [Grievance(**d) for d in docs.values()]
        grievances.sort(key=lambda g: (g.created_at, g.id), reverse=True)
        return grievances

    def list_by_status(self, status: GrievanceStatus) -> List[Grievance]:
        docs = self.gateway.query(COLLECTION, "status", GrievanceStatus(status).value)
        grievances = [Grievance(**d) for d in docs.values()]
        grievances.sort(key=lambda g: (g.created_at, g.id), reverse=True)
        return grievances

    def stale_pending(self, submitter_id: str, now: Optional[datetime] = None) -> List[Grievance]:
        """Pending grievances older than the staleness window (candidates for resubmission)."""
        cutoff = (now or now_utc()) - timedelta(days=STALE_PENDING_DAYS)
        return [g for g in self.list_for(submitter_id)
                if g.status == GrievanceStatus.PENDING and g.created_at < cutoff]

    # -- creation ---------------------------------------------------------

    def create(self, submitter: User, title: str, description: str,
               attachments: Iterable[str] = (), detection: Optional[Detection] = None) -> Grievance:
        title, description, urls = clean_submission(title, description, attachments)
        if self.moderation.is_blocked(submitter.id):
            raise Blocked("Blocked users cannot submit grievances")
        if detection is None:
            detection = self.classifier.detect_grievance(title, description)
        key = self.gateway.append(COLLECTION)
        now = now_utc()
        grievance = Grievance(
            id=key, submitter_id=submitter.id, submitter_name=submitter.display_name,
            title=title, description=description, created_at=now,
            priority=detection.priority, matched_terms=detection.matched_terms,
            attachments=urls, last_updated=now,
            timeline=[TimelineEntry(date=now, event=TimelineEvent.SUBMITTED,
                                    description="Grievance submitted successfully.")])
        self.gateway.write(f"{COLLECTION}/{key}", grievance.to_doc())
        logger.info("Grievance %s created by %s (priority=%s)", key, submitter.id, grievance.priority)
        return grievance

    # -- admin transitions ------------------------------------------------

    def start_processing(self, grievance_id: str, admin: User,
                         comment: Optional[str] = None) -> Grievance:
        require_admin(admin, "update grievance status")
        grievance = self.get(grievance_id)
        check_transition(grievance.status, GrievanceStatus.IN_PROGRESS)
        fields = {"status": GrievanceStatus.IN_PROGRESS.value}
        if grievance.assigned_to is None:
            fields.update(assigned_to=admin.id, assigned_name=admin.display_name)
        entry = TimelineEntry(event=TimelineEvent.IN_PROGRESS,
                              description=f"Grievance is being processed by {admin.display_name}.")
        updated = self._apply(grievance, fields, entry, admin, comment,
                              expect={"status": grievance.status})
        logger.info("Admin %s started processing %s", admin.id, grievance_id)
        self._status_notice(updated)
        return updated

    def resolve(self, grievance_id: str, admin: User, comment: Optional[str] = None) -> Grievance:
        """in-progress -> resolved; pending -> resolved is accepted as an administrative shortcut."""
        require_admin(admin, "update grievance status")
        grievance = self.get(grievance_id)
        check_transition(grievance.status, GrievanceStatus.RESOLVED)
        entry = TimelineEntry(event=TimelineEvent.RESOLVED,
                              description=f"Grievance resolved by {admin.display_name}.")
        updated = self._apply(grievance, {"status": GrievanceStatus.RESOLVED.value}, entry,
                              admin, comment, expect={"status": grievance.status})
        logger.info("Admin %s resolved %s", admin.id, grievance_id)
        self._status_notice(updated)
        return updated

    def assign(self, grievance_id: str, admin: User, assignee_id: Optional[str] = None) -> Grievance:
        """Set the assignee (the acting admin by default). Also forces the grievance to in-progress."""
        require_admin(admin, "assign grievances")
        assignee = self.users.get(assignee_id) if assignee_id and assignee_id != admin.id else admin
        if not assignee.is_admin:
            raise ValidationError("Grievances can only be assigned to administrators")
        grievance = self.get(grievance_id)
        if grievance.status != GrievanceStatus.IN_PROGRESS:
            check_transition(grievance.status, GrievanceStatus.IN_PROGRESS)
        fields = {"status": GrievanceStatus.IN_PROGRESS.value,
                  "assigned_to": assignee.id, "assigned_name": assignee.display_name}
        entry = TimelineEntry(event=TimelineEvent.ASSIGNED,
                              description=f"Grievance assigned to {assignee.display_name}.")
        updated = self._apply(grievance, fields, entry, expect={"status": grievance.status})
        logger.info("Admin %s assigned %s to %s", admin.id, grievance_id, assignee.id)
        self.notifications.dispatch(
            updated.submitter_id, NotificationKind.ASSIGNED,
            f"Your grievance (ID: {updated.id}) has been assigned to "
            f"{assignee.display_name} and is now in progress.",
            {"grievance_id": updated.id, "status": updated.status})
        return updated

    def escalate(self, grievance_id: str, admin: User, priority: Priority) -> Grievance:
        """Manual priority change by an administrator; only upward moves are accepted."""
        require_admin(admin, "change grievance priority")
        priority = Priority(priority)
        grievance = self.get(grievance_id)
        if PRIORITY_RANK[priority] <= PRIORITY_RANK[Priority(grievance.priority)]:
            raise ValidationError(
                f"Priority can only be raised (currently {grievance.priority})")
        entry = TimelineEntry(event=TimelineEvent.PRIORITY,
                              description=f"Priority raised to {priority.value}.")
        updated = self._apply(grievance, {"priority": priority.value}, entry,
                              expect={"priority": grievance.priority})
        logger.info("Admin %s raised %s to %s", admin.id, grievance_id, priority.value)
        self.notifications.dispatch(
            updated.submitter_id, NotificationKind.PRIORITY_UPDATE,
            f"Your grievance (ID: {updated.id}) priority has been raised to {priority.value}.",
            {"grievance_id": updated.id, "priority": priority.value})
        return updated

    def remove(self, grievance_id: str, admin: User, reason: str) -> Grievance:
        """Destructive administrative override outside the status graph."""
        require_admin(admin, "remove grievances")
        reason = (reason or "").strip() or DEFAULT_BLOCK_REASON
        grievance = self.get(grievance_id)
        self.gateway.delete(f"{COLLECTION}/{grievance_id}")
        logger.warning("Admin %s removed grievance %s: %s", admin.id, grievance_id, reason)
        self.notifications.dispatch(
            grievance.submitter_id, NotificationKind.DELETED,
            f"Your grievance (ID: {grievance_id}) has been removed. Reason: {reason}",
            {"grievance_id": grievance_id})
        return grievance

    # -- comments ---------------------------------------------------------

    def add_comment(self, grievance_id: str, author: User, text: str) -> Grievance:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Please enter a comment")
        grievance = self.get(grievance_id)
        is_submitter = author.id == grievance.submitter_id
        if not author.is_admin and not is_submitter:
            raise AuthorizationError("You can only comment on your own grievances")
        if not author.is_admin and self.moderation.is_blocked(author.id):
            raise Blocked("Blocked users cannot comment")
        entry = TimelineEntry(event=TimelineEvent.COMMENT,
                              description=f"{author.display_name}: {text}")
        updated = self._apply(grievance, {}, entry, author, text)
        context = {"grievance_id": grievance_id}
        if not is_submitter:
            self.notifications.dispatch(
                grievance.submitter_id, NotificationKind.COMMENT,
                "An admin has commented on your grievance.", context)
        elif grievance.assigned_to and grievance.assigned_to != author.id:
            self.notifications.dispatch(
                grievance.assigned_to, NotificationKind.COMMENT,
                f"{author.display_name} commented on grievance '{grievance.title}'.", context)
        else:
            self.notifications.notify_admins(
                NotificationKind.COMMENT,
                f"{author.display_name} commented on grievance '{grievance.title}'.", context)
        return updated

    # -- submitter actions ------------------------------------------------

    def resubmit(self, grievance_id: str, submitter: User) -> bool:
        """Escalate an open, non-urgent grievance to urgent and alert administrators.

        Ineligible grievances (resolved, or already urgent) are left untouched and
        ``False`` is returned; callers gate the action with ``can_resubmit``.
        """
        grievance = self.get(grievance_id)
        if grievance.submitter_id != submitter.id:
            raise AuthorizationError("Only the submitter can resubmit a grievance")
        if self.moderation.is_blocked(submitter.id):
            raise Blocked("Blocked users cannot resubmit grievances")
        if not can_resubmit(grievance):
            logger.debug("Resubmit of %s ignored (status=%s, priority=%s)",
                         grievance_id, grievance.status, grievance.priority)
            return False
        entry = TimelineEntry(event=TimelineEvent.RESUBMITTED,
                              description="Grievance resubmitted for urgent attention.")
        applied = self.gateway.update(
            f"{COLLECTION}/{grievance_id}",
            {"priority": Priority.URGENT.value, "last_updated": now_utc()},
            push={"timeline": [entry.to_doc()]},
            expect={"status": grievance.status, "priority": grievance.priority})
        if not applied:
            logger.debug("Resubmit of %s lost a race; left unchanged", grievance_id)
            return False
        logger.info("User %s resubmitted %s for urgent attention", submitter.id, grievance_id)
        self.notifications.notify_admins(
            NotificationKind.RESUBMITTED,
            f"{submitter.display_name} resubmitted grievance '{grievance.title}' "
            "for urgent attention.",
            {"grievance_id": grievance_id, "submitter_id": submitter.id})
        return True

    # -- helpers ----------------------------------------------------------

    def _apply(self, grievance: Grievance, fields: dict, entry: TimelineEntry,
               author: Optional[User] = None, comment: Optional[str] = None,
               expect: Optional[dict] = None) -> Grievance:
        """Write field changes, the timeline entry and an optional comment as one update."""
        now = now_utc()
        push = {"timeline": [entry.model_copy(update={"date": now}).to_doc()]}
        comment = (comment or "").strip()
        if comment and author is not None:
            push["comments"] = [Comment(author_id=author.id, author_name=author.display_name,
                                        text=comment, date=now).to_doc()]
        applied = self.gateway.update(f"{COLLECTION}/{grievance.id}",
                                      {**fields, "last_updated": now}, push=push, expect=expect)
        if not applied:
            current = self.gateway.read(f"{COLLECTION}/{grievance.id}")
            if current is None:
                raise NotFound("Grievance not found")
            raise ValidationError("Grievance was changed by someone else; reload and try again")
        return self.get(grievance.id)

    def _status_notice(self, grievance: Grievance):
        self.notifications.dispatch(
            grievance.submitter_id, NotificationKind.STATUS_UPDATE,
            f"Your grievance (ID: {grievance.id}) status has been updated to {grievance.status}.",
            {"grievance_id": grievance.id, "status": grievance.status})
