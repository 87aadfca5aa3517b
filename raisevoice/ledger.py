# Per-user submission credits: consumption, replenishment, requests and admin grants

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .config import (MAX_NATURAL_CREDITS, MIN_REASON_LENGTH,
                     REPLENISH_INTERVAL_HOURS, now_utc)
from .errors import (Blocked, Conflict, DuplicateRequest, InsufficientCredits,
                     NotFound, PersistenceError, ValidationError)
from .gateway import PersistenceGateway
from .models import CreditRequest, NotificationKind, RequestStatus, User
from .moderation import ModerationState
from .notifications import NotificationDispatcher
from .users import COLLECTION as USERS, UserDirectory, require_admin

logger = logging.getLogger(__name__)

REQUESTS = "credit_requests"
# One document per user naming their latest credit request
CLAIMS = "credit_request_claims"


def validate_reason(reason: Optional[str]) -> str:
    reason = (reason or "").strip()
    if len(reason) < MIN_REASON_LENGTH:
        raise ValidationError(
            f"Please explain why you need more credits (at least {MIN_REASON_LENGTH} characters)")
    return reason


class CreditLedger:
    def __init__(self, gateway: PersistenceGateway, users: UserDirectory,
                 moderation: ModerationState, notifications: NotificationDispatcher):
        self.gateway = gateway
        self.users = users
        self.moderation = moderation
        self.notifications = notifications

    # -- balance ----------------------------------------------------------

    def balance(self, user_id: str) -> int:
        return self.users.get(user_id).grievance_credits

    def consume(self, user: User) -> int:
        """Spend one credit; returns the new balance.

        The decrement is a conditional increment with floor 0, so two concurrent
        submissions can never drive the balance negative.
        """
        current = self.users.get(user.id)
        if self.moderation.is_blocked(current):
            raise Blocked("Blocked users cannot submit grievances")
        if current.grievance_credits <= 0:
            raise InsufficientCredits("No grievance submission credits left")
        remaining = self.gateway.increment(
            f"{USERS}/{user.id}", "grievance_credits", -1, floor=0,
            extra={"last_credit_update": now_utc()})
        if remaining is None:
            raise InsufficientCredits("No grievance submission credits left")
        logger.info("User %s consumed a credit (%d left)", user.id, remaining)
        return remaining

    def refund(self, user_id: str) -> Optional[int]:
        return self.gateway.increment(f"{USERS}/{user_id}", "grievance_credits", 1)

    def replenish(self, user: User, now: Optional[datetime] = None) -> int:
        """Natural replenishment: one credit per elapsed interval, never above the nominal cap."""
        now = now or now_utc()
        current = self.users.get(user.id)
        if self.moderation.is_blocked(current):
            raise Blocked("Blocked users do not accrue credits")
        credits = current.grievance_credits
        if credits >= MAX_NATURAL_CREDITS:
            return credits
        if now - current.last_credit_update < timedelta(hours=REPLENISH_INTERVAL_HOURS):
            return credits
        applied = self.gateway.update(
            f"{USERS}/{user.id}",
            {"grievance_credits": credits + 1, "last_credit_update": now},
            expect={"grievance_credits": credits})
        if not applied:
            return self.balance(user.id)
        logger.info("User %s replenished to %d credits", user.id, credits + 1)
        return credits + 1

    # -- requests ---------------------------------------------------------

    def request_more(self, user: User, reason: str) -> CreditRequest:
        reason = validate_reason(reason)
        current = self.users.get(user.id)
        if self.moderation.is_blocked(current):
            raise Blocked("Blocked users cannot request credits")
        if self.pending_request_for(user.id) is not None:
            raise DuplicateRequest("You already have a pending credit request")
        key = self.gateway.append(REQUESTS)
        request = CreditRequest(id=key, requester_id=user.id,
                                requester_name=current.display_name,
                                credits_at_request=current.grievance_credits,
                                reason=reason, created_at=now_utc())
        try:
            self.gateway.write(f"{REQUESTS}/{key}", request.to_doc())
        except Conflict as e:
            raise DuplicateRequest("You already have a pending credit request") from e
        try:
            claimed = self._claim(user.id, key)
        except PersistenceError:
            self.gateway.delete(f"{REQUESTS}/{key}")
            raise
        if not claimed:
            self.gateway.delete(f"{REQUESTS}/{key}")
            raise DuplicateRequest("You already have a pending credit request")
        logger.info("User %s requested more credits (%s)", user.id, key)
        self.notifications.notify_admins(
            NotificationKind.CREDIT_REQUEST,
            f"{request.requester_name} requested additional grievance credits.",
            {"request_id": key, "requester_id": user.id})
        return request

    def get_request(self, request_id: str) -> CreditRequest:
        doc = self.gateway.read(f"{REQUESTS}/{request_id}")
        if doc is None:
            raise NotFound("Credit request not found")
        return CreditRequest(**doc)

    def pending_request_for(self, user_id: str) -> Optional[CreditRequest]:
        for request in self.requests_for(user_id):
            if request.status == RequestStatus.PENDING:
                return request
        return None

    def requests_for(self, user_id: str) -> List[CreditRequest]:
        docs = self.gateway.query(REQUESTS, "requester_id", user_id)
        return [CreditRequest(**doc) for doc in docs.values()]

    def pending_requests(self) -> List[CreditRequest]:
        docs = self.gateway.query(REQUESTS, "status", RequestStatus.PENDING.value)
        return [CreditRequest(**doc) for doc in docs.values()]

    def approve(self, request_id: str, granted_credits: int, approver: User) -> CreditRequest:
        require_admin(approver, "approve credit requests")
        if granted_credits < 1:
            raise ValidationError("At least one credit must be granted")
        request = self._pending(request_id)
        validate_reason(request.reason)
        self.users.get(request.requester_id)
        now = now_utc()
        resolution = {
            "status": RequestStatus.APPROVED.value,
            "resolved_by": approver.id,
            "resolved_by_name": approver.display_name,
            "resolved_at": now,
            "credits_granted": granted_credits,
        }
        self._resolve(request, resolution)
        balance = self.gateway.increment(
            f"{USERS}/{request.requester_id}", "grievance_credits", granted_credits,
            extra={"last_credit_update": now})
        if balance is None:
            logger.error("Approved request %s but requester %s disappeared before the grant",
                         request_id, request.requester_id)
        logger.info("Admin %s approved request %s (+%d)", approver.id, request_id, granted_credits)
        self.notifications.dispatch(
            request.requester_id, NotificationKind.CREDITS_APPROVED,
            "Your request for additional credits has been approved. "
            f"You have been granted {granted_credits} credit(s).",
            {"request_id": request_id, "credits_granted": granted_credits})
        return request.model_copy(update=resolution)

    def reject(self, request_id: str, approver: User) -> CreditRequest:
        require_admin(approver, "reject credit requests")
        request = self._pending(request_id)
        resolution = {
            "status": RequestStatus.REJECTED.value,
            "resolved_by": approver.id,
            "resolved_by_name": approver.display_name,
            "resolved_at": now_utc(),
            "credits_granted": 0,
        }
        self._resolve(request, resolution)
        logger.info("Admin %s rejected request %s", approver.id, request_id)
        self.notifications.dispatch(
            request.requester_id, NotificationKind.CREDITS_REJECTED,
            "Your request for additional credits has been rejected.",
            {"request_id": request_id})
        return request.model_copy(update=resolution)

    def grant_direct(self, user_id: str, amount: int, admin: User) -> int:
        """Admin override: add credits with no request and no upper bound."""
        require_admin(admin, "grant credits")
        if amount < 1:
            raise ValidationError("At least one credit must be granted")
        self.users.get(user_id)
        balance = self.gateway.increment(
            f"{USERS}/{user_id}", "grievance_credits", amount,
            extra={"last_credit_update": now_utc()})
        if balance is None:
            raise NotFound(f"User {user_id} not found")
        logger.info("Admin %s granted %d credit(s) to %s (now %d)", admin.id, amount, user_id, balance)
        self.notifications.dispatch(
            user_id, NotificationKind.CREDITS_GRANTED,
            f"An administrator has granted you {amount} additional grievance credit(s).",
            {"credits_granted": amount})
        return balance

    # -- helpers ----------------------------------------------------------

    def _claim(self, user_id: str, request_id: str) -> bool:
        """Point the user's claim document at *request_id*.

        The claim is created when absent, or taken over from a request that is
        no longer pending via compare-and-set; either way only one concurrent
        caller wins.
        """
        path = f"{CLAIMS}/{user_id}"
        if self.gateway.create(path, {"request_id": request_id}):
            return True
        held = (self.gateway.read(path) or {}).get("request_id")
        if held is not None:
            doc = self.gateway.read(f"{REQUESTS}/{held}")
            if doc is not None and doc.get("status") == RequestStatus.PENDING.value:
                return False
        return self.gateway.update(path, {"request_id": request_id},
                                   expect={"request_id": held})

    def _pending(self, request_id: str) -> CreditRequest:
        request = self.get_request(request_id)
        if request.status != RequestStatus.PENDING:
            raise NotFound("Credit request is no longer pending")
        return request

    def _resolve(self, request: CreditRequest, resolution: dict):
        applied = self.gateway.update(
            f"{REQUESTS}/{request.id}", resolution,
            expect={"status": RequestStatus.PENDING.value})
        if not applied:
            raise NotFound("Credit request is no longer pending")
