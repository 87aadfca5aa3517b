"""Credit consumption, replenishment, requests and grants."""

from datetime import timedelta

import pytest

from raisevoice.config import ADMIN_POOL, INITIAL_CREDITS, MAX_NATURAL_CREDITS, now_utc
from raisevoice.errors import (AuthorizationError, Blocked, DuplicateRequest,
                               InsufficientCredits, NotFound, ValidationError)
from raisevoice.models import NotificationKind, RequestStatus

REASON = "I have several more problems in my ward to report"


def kinds(engine, recipient_id):
    return [n.kind for n in engine.notifications.list_for(recipient_id)]


class TestConsume:
    def test_new_user_starts_with_initial_credits(self, engine, citizen):
        assert engine.ledger.balance(citizen.id) == INITIAL_CREDITS

    def test_consume_decrements(self, engine, citizen):
        assert engine.ledger.consume(citizen) == INITIAL_CREDITS - 1
        assert engine.ledger.balance(citizen.id) == INITIAL_CREDITS - 1

    def test_consume_at_zero_fails_and_leaves_balance(self, engine, citizen, gateway):
        gateway.merge(f"users/{citizen.id}", {"grievance_credits": 0})
        with pytest.raises(InsufficientCredits):
            engine.ledger.consume(citizen)
        assert engine.ledger.balance(citizen.id) == 0

    def test_balance_never_negative(self, engine, citizen):
        for _ in range(INITIAL_CREDITS):
            engine.ledger.consume(citizen)
        with pytest.raises(InsufficientCredits):
            engine.ledger.consume(citizen)
        assert engine.ledger.balance(citizen.id) == 0

    def test_blocked_user_cannot_consume(self, engine, citizen, admin):
        engine.moderation.block(citizen.id, "spam", admin)
        with pytest.raises(Blocked):
            engine.ledger.consume(citizen)
        assert engine.ledger.balance(citizen.id) == INITIAL_CREDITS

    def test_consume_stamps_last_credit_update(self, engine, citizen):
        before = engine.users.get(citizen.id).last_credit_update
        engine.ledger.consume(citizen)
        assert engine.users.get(citizen.id).last_credit_update >= before

    def test_unknown_user(self, engine, citizen, gateway):
        gateway.delete(f"users/{citizen.id}")
        with pytest.raises(NotFound):
            engine.ledger.consume(citizen)


class TestReplenish:
    def test_no_credit_before_interval(self, engine, citizen):
        engine.ledger.consume(citizen)
        assert engine.ledger.replenish(citizen) == INITIAL_CREDITS - 1

    def test_one_credit_per_interval(self, engine, citizen):
        engine.ledger.consume(citizen)
        engine.ledger.consume(citizen)
        later = now_utc() + timedelta(hours=25)
        assert engine.ledger.replenish(citizen, now=later) == INITIAL_CREDITS - 1
        # The clock restarts from the replenishment
        assert engine.ledger.replenish(citizen, now=later + timedelta(hours=1)) == INITIAL_CREDITS - 1
        assert engine.ledger.replenish(citizen, now=later + timedelta(hours=25)) == INITIAL_CREDITS

    def test_never_above_natural_cap(self, engine, citizen):
        later = now_utc() + timedelta(days=30)
        assert engine.ledger.replenish(citizen, now=later) == MAX_NATURAL_CREDITS

    def test_granted_credits_above_cap_are_kept(self, engine, citizen, admin):
        engine.ledger.grant_direct(citizen.id, 5, admin)
        later = now_utc() + timedelta(days=2)
        assert engine.ledger.replenish(citizen, now=later) == INITIAL_CREDITS + 5

    def test_blocked_user_does_not_accrue(self, engine, gateway, citizen, admin):
        engine.ledger.consume(citizen)
        engine.moderation.block(citizen.id, "Spam", admin)
        before = gateway.read(f"users/{citizen.id}")
        later = now_utc() + timedelta(days=2)
        with pytest.raises(Blocked):
            engine.ledger.replenish(citizen, now=later)
        after = gateway.read(f"users/{citizen.id}")
        assert after["grievance_credits"] == INITIAL_CREDITS - 1
        assert after["last_credit_update"] == before["last_credit_update"]


class TestRequests:
    def test_request_notifies_admin_pool(self, engine, citizen):
        request = engine.ledger.request_more(citizen, REASON)
        assert request.status == RequestStatus.PENDING
        assert request.credits_at_request == INITIAL_CREDITS
        assert kinds(engine, ADMIN_POOL) == [NotificationKind.CREDIT_REQUEST]

    def test_short_reason_rejected(self, engine, citizen):
        with pytest.raises(ValidationError):
            engine.ledger.request_more(citizen, "too short")
        assert engine.ledger.requests_for(citizen.id) == []

    def test_reason_length_ignores_whitespace(self, engine, citizen):
        with pytest.raises(ValidationError):
            engine.ledger.request_more(citizen, "   short    ")

    def test_second_pending_request_rejected(self, engine, citizen):
        engine.ledger.request_more(citizen, REASON)
        with pytest.raises(DuplicateRequest):
            engine.ledger.request_more(citizen, REASON)
        assert len(engine.ledger.requests_for(citizen.id)) == 1

    def test_new_request_allowed_after_resolution(self, engine, citizen, admin):
        first = engine.ledger.request_more(citizen, REASON)
        engine.ledger.reject(first.id, admin)
        second = engine.ledger.request_more(citizen, REASON)
        assert second.id != first.id
        assert engine.ledger.pending_request_for(citizen.id).id == second.id

    def test_blocked_user_cannot_request(self, engine, citizen, admin):
        engine.moderation.block(citizen.id, "spam", admin)
        with pytest.raises(Blocked):
            engine.ledger.request_more(citizen, REASON)

    def test_pending_requests_lists_only_pending(self, engine, citizen, other_citizen, admin):
        first = engine.ledger.request_more(citizen, REASON)
        engine.ledger.request_more(other_citizen, REASON)
        engine.ledger.approve(first.id, 1, admin)
        pending = engine.ledger.pending_requests()
        assert [r.requester_id for r in pending] == [other_citizen.id]


class TestApproveReject:
    def test_approve_grants_and_notifies(self, engine, citizen, admin):
        request = engine.ledger.request_more(citizen, REASON)
        resolved = engine.ledger.approve(request.id, 2, admin)
        assert resolved.status == RequestStatus.APPROVED
        assert resolved.credits_granted == 2
        assert resolved.resolved_by == admin.id
        assert engine.ledger.balance(citizen.id) == INITIAL_CREDITS + 2
        assert engine.ledger.get_request(request.id).status == RequestStatus.APPROVED
        note = engine.notifications.list_for(citizen.id)[-1]
        assert note.kind == NotificationKind.CREDITS_APPROVED
        assert "granted 2 credit(s)" in note.message

    def test_approve_twice_fails(self, engine, citizen, admin):
        request = engine.ledger.request_more(citizen, REASON)
        engine.ledger.approve(request.id, 1, admin)
        with pytest.raises(NotFound):
            engine.ledger.approve(request.id, 1, admin)
        assert engine.ledger.balance(citizen.id) == INITIAL_CREDITS + 1

    def test_approve_requires_positive_grant(self, engine, citizen, admin):
        request = engine.ledger.request_more(citizen, REASON)
        with pytest.raises(ValidationError):
            engine.ledger.approve(request.id, 0, admin)
        assert engine.ledger.get_request(request.id).status == RequestStatus.PENDING

    def test_approve_requires_admin(self, engine, citizen, other_citizen):
        request = engine.ledger.request_more(citizen, REASON)
        with pytest.raises(AuthorizationError):
            engine.ledger.approve(request.id, 1, other_citizen)

    def test_approve_unknown_request(self, engine, admin):
        with pytest.raises(NotFound):
            engine.ledger.approve("missing", 1, admin)

    def test_reject_leaves_balance(self, engine, citizen, admin):
        request = engine.ledger.request_more(citizen, REASON)
        resolved = engine.ledger.reject(request.id, admin)
        assert resolved.status == RequestStatus.REJECTED
        assert engine.ledger.balance(citizen.id) == INITIAL_CREDITS
        assert kinds(engine, citizen.id) == [NotificationKind.CREDITS_REJECTED]

    def test_reject_after_approve_fails(self, engine, citizen, admin):
        request = engine.ledger.request_more(citizen, REASON)
        engine.ledger.approve(request.id, 1, admin)
        with pytest.raises(NotFound):
            engine.ledger.reject(request.id, admin)


class TestGrantDirect:
    def test_grant_has_no_cap(self, engine, citizen, admin):
        assert engine.ledger.grant_direct(citizen.id, 50, admin) == INITIAL_CREDITS + 50
        note = engine.notifications.list_for(citizen.id)[-1]
        assert note.kind == NotificationKind.CREDITS_GRANTED
        assert "50 additional" in note.message

    def test_grant_requires_admin(self, engine, citizen, other_citizen):
        with pytest.raises(AuthorizationError):
            engine.ledger.grant_direct(citizen.id, 1, other_citizen)

    def test_grant_rejects_non_positive(self, engine, citizen, admin):
        with pytest.raises(ValidationError):
            engine.ledger.grant_direct(citizen.id, 0, admin)

    def test_grant_to_unknown_user(self, engine, admin):
        with pytest.raises(NotFound):
            engine.ledger.grant_direct("ghost", 1, admin)
