"""Interview scheduling and status transitions."""

from datetime import timedelta

import pytest

from hiq.service.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    OutOfWindowError,
    ValidationError,
)
from hiq.service.identity import Identity
from hiq.service.interview_access import ACCESS_CANDIDATE, InterviewAccessGate
from hiq.service.interviews import (
    SESSION_ID_ALPHABET,
    SESSION_ID_LENGTH,
    InterviewRequest,
    InterviewService,
    new_session_id,
)
from hiq.storage.documents import INTERVIEWS, USERS

LEAD = Identity(uid="uid-lead", email="lead@acme.io", email_verified=True)
OTHER = Identity(uid="uid-other", email="other@acme.io", email_verified=True)
CANDIDATE = Identity(uid="uid-cand", email="sam@example.org")


@pytest.fixture
def service(store, settings, clock, notifier):
    store.set(USERS, LEAD.uid, {"email": LEAD.email})
    gate = InterviewAccessGate(store, settings, clock=clock)
    return InterviewService(store, gate, notifier, clock=clock)


def _request(clock, **overrides):
    fields = {
        "candidate_name": "Sam Rivera",
        "candidate_email": "Sam@Example.org",
        "date": clock.now + timedelta(days=1),
    }
    fields.update(overrides)
    return InterviewRequest(**fields)


def test_session_ids_are_url_safe():
    ids = {new_session_id() for _ in range(100)}
    assert len(ids) == 100
    for session_id in ids:
        assert len(session_id) == SESSION_ID_LENGTH
        assert set(session_id) <= set(SESSION_ID_ALPHABET)


class TestSchedule:
    async def test_creates_scheduled_interview(self, service, clock, notifier):
        interview = await service.schedule(LEAD, _request(clock))
        assert interview.status == "scheduled"
        assert interview.interviewer_id == LEAD.uid
        assert interview.candidate_email == "sam@example.org"
        assert interview.date == clock.now + timedelta(days=1)
        (invite,) = notifier.of_kind("interview_invite")
        assert invite[1] == "sam@example.org"
        assert invite[3]["session_id"] == interview.session_id

    async def test_past_date_rejected(self, service, clock):
        with pytest.raises(ValidationError):
            await service.schedule(LEAD, _request(clock, date=clock.now))

    async def test_blank_name_rejected(self, service, clock):
        with pytest.raises(ValidationError):
            await service.schedule(LEAD, _request(clock, candidate_name="  "))

    async def test_duration_must_be_positive(self, service, clock):
        with pytest.raises(ValidationError):
            await service.schedule(LEAD, _request(clock, duration=0))

    async def test_list_sorted_by_date(self, service, clock):
        later = await service.schedule(LEAD, _request(clock, date=clock.now + timedelta(days=3)))
        sooner = await service.schedule(LEAD, _request(clock, date=clock.now + timedelta(days=2)))
        await service.schedule(OTHER, _request(clock))
        assert [i.id for i in service.list_for_interviewer(LEAD.uid)] == [sooner.id, later.id]
        assert service.list_for_interviewer(LEAD.uid, "completed") == []
        with pytest.raises(ValidationError):
            service.list_for_interviewer(LEAD.uid, "archived")


class TestLifecycle:
    async def test_cancel_by_owner(self, service, clock, notifier):
        interview = await service.schedule(LEAD, _request(clock))
        cancelled = await service.cancel(LEAD, interview.id)
        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_by == LEAD.uid
        assert len(notifier.of_kind("interview_cancelled")) == 1

    async def test_cancel_by_other_forbidden(self, service, clock):
        interview = await service.schedule(LEAD, _request(clock))
        with pytest.raises(ForbiddenError):
            await service.cancel(OTHER, interview.id)
        assert service.get(interview.id).status == "scheduled"

    async def test_cancel_twice(self, service, clock):
        interview = await service.schedule(LEAD, _request(clock))
        await service.cancel(LEAD, interview.id)
        with pytest.raises(InvalidStateError):
            await service.cancel(LEAD, interview.id)

    async def test_start_outside_window(self, service, clock):
        interview = await service.schedule(LEAD, _request(clock))
        with pytest.raises(OutOfWindowError):
            service.start(LEAD, interview.id)

    async def test_start_then_complete(self, service, store, clock, notifier):
        interview = await service.schedule(LEAD, _request(clock))
        clock.now = interview.date - timedelta(minutes=5)

        access = service.start(CANDIDATE, interview.id)
        assert access.access_type == ACCESS_CANDIDATE
        assert access.interview.status == "in_progress"
        assert store.get(INTERVIEWS, interview.id)["started_by"] == ACCESS_CANDIDATE

        clock.advance(minutes=47)
        completed = await service.complete(LEAD, interview.id)
        assert completed.status == "completed"
        assert completed.actual_duration == 47
        (entry,) = notifier.of_kind("interview_completed")
        assert entry[1] == LEAD.email

    async def test_started_interview_cannot_be_joined_again(self, service, clock):
        interview = await service.schedule(LEAD, _request(clock))
        clock.now = interview.date
        service.start(LEAD, interview.id)
        with pytest.raises(InvalidStateError):
            service.start(CANDIDATE, interview.id)

    async def test_complete_requires_in_progress(self, service, clock):
        interview = await service.schedule(LEAD, _request(clock))
        with pytest.raises(InvalidStateError):
            await service.complete(LEAD, interview.id)

    async def test_complete_by_stranger(self, service, clock):
        interview = await service.schedule(LEAD, _request(clock))
        clock.now = interview.date
        service.start(LEAD, interview.id)
        with pytest.raises(ForbiddenError):
            await service.complete(OTHER, interview.id)


class TestPublicDetails:
    async def test_hides_interviewer(self, service, clock):
        interview = await service.schedule(LEAD, _request(clock))
        details = service.public_details(interview.session_id)
        assert details["id"] == interview.id
        assert details["candidate_name"] == "Sam Rivera"
        assert "interviewer_id" not in details
        assert "candidate_email" not in details

    async def test_cancelled_is_not_public(self, service, clock):
        interview = await service.schedule(LEAD, _request(clock))
        await service.cancel(LEAD, interview.id)
        with pytest.raises(NotFoundError):
            service.public_details(interview.session_id)
