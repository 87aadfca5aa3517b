"""End-to-end workflow scenarios through the GrievanceEngine facade."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from raisevoice.config import ADMIN_POOL, INITIAL_CREDITS
from raisevoice.errors import (Blocked, DuplicateRequest, InsufficientCredits, PersistenceError,
                               ValidationError)
from raisevoice.models import (GrievanceStatus, ModerationStatus, NotificationKind, Priority,
                               RequestStatus)

from conftest import CITIZEN


def set_credits(gateway, user, credits):
    gateway.merge(f"users/{user.id}", {"grievance_credits": credits})


def count(engine, recipient_id):
    return len(engine.notifications.list_for(recipient_id))


class TestScenarios:
    def test_submit_spends_last_credit(self, engine, gateway, citizen):
        set_credits(gateway, citizen, 1)
        g = engine.submit(citizen, "Water main", "The pipe is broken and there is no water")
        assert engine.ledger.balance(citizen.id) == 0
        assert g.status == GrievanceStatus.PENDING
        assert g.priority == Priority.HIGH
        assert g.matched_terms == ["broken", "no water"]

    def test_start_processing_notifies_submitter_once(self, engine, citizen, admin, grievance):
        g = engine.lifecycle.start_processing(grievance.id, admin)
        assert g.status == GrievanceStatus.IN_PROGRESS
        assert count(engine, citizen.id) == 1

    def test_request_then_approve(self, engine, gateway, citizen, admin):
        set_credits(gateway, citizen, 0)
        with pytest.raises(ValidationError):
            engine.ledger.request_more(citizen, "123456789")
        request = engine.ledger.request_more(citizen, "123456789012")
        assert request.status == RequestStatus.PENDING

        approved = engine.ledger.approve(request.id, 2, admin)
        assert approved.status == RequestStatus.APPROVED
        assert engine.ledger.balance(citizen.id) == 2
        assert count(engine, citizen.id) == 1

    def test_resubmit_in_progress_alerts_admins_only(self, engine, citizen, admin, grievance):
        engine.lifecycle.start_processing(grievance.id, admin)
        before = engine.lifecycle.get(grievance.id)
        citizen_notes = count(engine, citizen.id)

        assert engine.lifecycle.resubmit(grievance.id, citizen)
        after = engine.lifecycle.get(grievance.id)
        assert after.priority == Priority.URGENT
        assert after.status == GrievanceStatus.IN_PROGRESS
        assert len(after.timeline) == len(before.timeline) + 1
        assert count(engine, citizen.id) == citizen_notes
        assert [n.kind for n in engine.notifications.list_for(ADMIN_POOL)] == \
            [NotificationKind.RESUBMITTED]

    def test_warn_active_user(self, engine, citizen, admin):
        user = engine.moderation.warn(citizen.id, "late payment", admin)
        assert user.moderation.status == ModerationStatus.WARNED
        assert user.moderation.warnings == 1
        assert count(engine, citizen.id) == 1


class TestInvariants:
    def test_one_notification_per_affecting_call(self, engine, citizen, other_citizen,
                                                 admin, other_admin):
        g1 = engine.submit(citizen, "Pothole", "Big pothole")
        g2 = engine.submit(citizen, "Streetlight", "Dark road")
        g3 = engine.submit(citizen, "Garbage", "Not collected")
        request = engine.ledger.request_more(citizen, "More issues in my ward")
        calls = [
            lambda: engine.lifecycle.start_processing(g1.id, admin),
            lambda: engine.lifecycle.resolve(g1.id, admin),
            lambda: engine.lifecycle.assign(g2.id, admin, other_admin.id),
            lambda: engine.lifecycle.remove(g3.id, admin, "Duplicate"),
            lambda: engine.ledger.approve(request.id, 1, admin),
            lambda: engine.ledger.grant_direct(citizen.id, 1, admin),
            lambda: engine.moderation.warn(citizen.id, "Be polite", admin),
            lambda: engine.moderation.block(citizen.id, "Spam", admin),
        ]
        for call in calls:
            before = count(engine, citizen.id)
            call()
            assert count(engine, citizen.id) == before + 1
        assert count(engine, other_citizen.id) == 0

    def test_reject_notifies_once(self, engine, citizen, admin):
        request = engine.ledger.request_more(citizen, "More issues in my ward")
        engine.ledger.reject(request.id, admin)
        assert count(engine, citizen.id) == 1

    def test_urgent_is_never_lowered(self, engine, citizen, admin):
        g = engine.submit(citizen, "Emergency", "Emergency at the bridge")
        assert g.priority == Priority.URGENT
        assert not engine.lifecycle.resubmit(g.id, citizen)
        for target in (Priority.NORMAL, Priority.HIGH, Priority.URGENT):
            with pytest.raises(ValidationError):
                engine.lifecycle.escalate(g.id, admin, target)
        engine.lifecycle.assign(g.id, admin)
        engine.lifecycle.add_comment(g.id, citizen, "Still waiting")
        engine.lifecycle.resolve(g.id, admin)
        assert engine.lifecycle.get(g.id).priority == Priority.URGENT

    def test_resubmit_noop_leaves_no_trace(self, engine, citizen, admin, grievance):
        engine.lifecycle.resolve(grievance.id, admin)
        before = engine.lifecycle.get(grievance.id)
        admin_notes, citizen_notes = count(engine, ADMIN_POOL), count(engine, citizen.id)
        assert engine.lifecycle.resubmit(grievance.id, citizen) is False
        assert engine.lifecycle.get(grievance.id) == before
        assert count(engine, ADMIN_POOL) == admin_notes
        assert count(engine, citizen.id) == citizen_notes

    def test_blocked_user_cannot_submit_regardless_of_balance(self, engine, citizen, admin):
        engine.ledger.grant_direct(citizen.id, 10, admin)
        engine.moderation.block(citizen.id, "Spam", admin)
        with pytest.raises(Blocked):
            engine.submit(citizen, "Pothole", "Big pothole")
        with pytest.raises(Blocked):
            engine.ledger.consume(citizen)
        assert engine.ledger.balance(citizen.id) == INITIAL_CREDITS + 10
        assert engine.lifecycle.list_for(citizen.id) == []

    def test_concurrent_submissions_never_overdraw(self, engine, citizen):
        def attempt(i):
            try:
                engine.submit(citizen, f"Report {i}", "Something needs fixing")
                return True
            except InsufficientCredits:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(20)))
        assert results.count(True) == INITIAL_CREDITS
        assert engine.ledger.balance(citizen.id) == 0
        assert len(engine.lifecycle.list_for(citizen.id)) == INITIAL_CREDITS

    def test_single_pending_request_per_user(self, engine, citizen, admin):
        engine.ledger.request_more(citizen, "More issues in my ward")
        for _ in range(3):
            with pytest.raises(DuplicateRequest):
                engine.ledger.request_more(citizen, "More issues in my ward")
        pending = [r for r in engine.ledger.requests_for(citizen.id)
                   if r.status == RequestStatus.PENDING]
        assert len(pending) == 1

    def test_concurrent_requests_leave_one_pending(self, engine, citizen):
        def attempt(_):
            try:
                engine.ledger.request_more(citizen, "More issues in my ward")
                return True
            except DuplicateRequest:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(20)))
        assert results.count(True) == 1
        assert len(engine.ledger.requests_for(citizen.id)) == 1
        assert count(engine, ADMIN_POOL) == 1

    def test_requests_racing_past_the_pending_check(self, engine, citizen, monkeypatch):
        barrier = threading.Barrier(2)
        lookup = engine.ledger.pending_request_for

        def lookup_then_wait(user_id):
            found = lookup(user_id)
            barrier.wait(timeout=5)
            return found

        monkeypatch.setattr(engine.ledger, "pending_request_for", lookup_then_wait)

        def attempt(_):
            try:
                return engine.ledger.request_more(citizen, "More issues in my ward")
            except DuplicateRequest:
                return None

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(attempt, range(2)))
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert [r.id for r in engine.ledger.requests_for(citizen.id)] == [winners[0].id]
        assert lookup(citizen.id).id == winners[0].id


class TestSubmit:
    def test_insufficient_credits_creates_nothing(self, engine, gateway, citizen):
        set_credits(gateway, citizen, 0)
        with pytest.raises(InsufficientCredits):
            engine.submit(citizen, "Pothole", "Big pothole")
        assert engine.lifecycle.list_for(citizen.id) == []

    def test_validation_happens_before_spending(self, engine, citizen):
        with pytest.raises(ValidationError):
            engine.submit(citizen, "", "No title")
        assert engine.ledger.balance(citizen.id) == INITIAL_CREDITS

    def test_failed_create_refunds_credit(self, engine, gateway, citizen, monkeypatch):
        original = gateway.write

        def failing_write(path, value):
            if path.startswith("grievances/"):
                raise PersistenceError("write failed")
            original(path, value)

        monkeypatch.setattr(gateway, "write", failing_write)
        with pytest.raises(PersistenceError):
            engine.submit(citizen, "Pothole", "Big pothole")
        assert engine.ledger.balance(citizen.id) == INITIAL_CREDITS


class TestSignIn:
    def test_racing_first_sign_in_keeps_existing_balance(self, engine, gateway, citizen,
                                                         monkeypatch):
        set_credits(gateway, citizen, 1)
        read = gateway.read
        missed = []

        def read_missing_once(path):
            # The first lookup runs before the other sign-in's record lands
            if path == f"users/{citizen.id}" and not missed:
                missed.append(path)
                return None
            return read(path)

        monkeypatch.setattr(gateway, "read", read_missing_once)
        user = engine.users.ensure(CITIZEN)
        assert missed
        assert user.grievance_credits == 1
        assert engine.ledger.balance(citizen.id) == 1

    def test_concurrent_first_sign_ins_provision_once(self, engine):
        with ThreadPoolExecutor(max_workers=8) as pool:
            users = list(pool.map(lambda _: engine.users.ensure(CITIZEN), range(16)))
        assert {u.id for u in users} == {CITIZEN.id}
        assert len(engine.users.list_users()) == 1
        assert engine.ledger.balance(CITIZEN.id) == INITIAL_CREDITS
