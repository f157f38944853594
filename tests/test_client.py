"""
Tests for the async client package: chat sessions, the progress
indicator, the professional context mirror, the guest countdown and
the guest portal.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import httpx
import pytest

from app.client.chat_client import (
    ChatRequestFailedError,
    ChatSession,
    GuestChatSession,
    NotAuthenticatedError,
    PaymentRequiredError,
    RateLimitedError,
)
from app.client.context_cache import (
    CachedContext,
    ContextCache,
    ContextCleared,
    ContextFetched,
    PatientSelected,
    context_from_payload,
    reduce,
)
from app.client.countdown import GrantCountdown, format_remaining
from app.client.guest_portal import GuestAccessError, GuestPortal
from app.client.progress import ProgressTracker, Stage, StageState
from app.schemas.chat import ChatTurn
from app.services import access_grant_service
from app.utils.sse import format_delta_event, format_done_event

BASE_URL = "http://testserver/api/v1"


def _sse(*fragments):
    return b"".join(format_delta_event(f) for f in fragments) + format_done_event()


def _run_with(handler, coro_factory):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL) as client:
            return await coro_factory(client)

    return asyncio.run(run())


class TestChatSession:
    def test_reply_grows_in_place_and_conversation_is_remembered(self):
        conversation_id = uuid4()
        seen_payloads = []
        updates = []

        def handler(request):
            seen_payloads.append(json.loads(request.content))
            return httpx.Response(
                200,
                content=_sse("Según ", "el documento ", "'hemograma.pdf'"),
                headers={"X-Conversation-Id": str(conversation_id), "content-type": "text/event-stream"},
            )

        async def scenario(client):
            session = ChatSession(
                client,
                token="jwt",
                on_update=updates.append,
                refresh_suggestions_after_reply=False,
            )
            reply = await session.send("  ¿Qué dice mi hemograma?  ")
            return session, reply

        session, reply = _run_with(handler, scenario)

        assert reply == "Según el documento 'hemograma.pdf'"
        assert session.conversation_id == conversation_id
        assert session.transcript == [
            ChatTurn(role="user", content="¿Qué dice mi hemograma?"),
            ChatTurn(role="assistant", content=reply),
        ]
        assert seen_payloads == [{"message": "¿Qué dice mi hemograma?"}]
        assistant_views = [u[-1].content for u in updates if u[-1].role == "assistant"]
        assert assistant_views == ["Según ", "Según el documento ", reply]
        assert all(state == StageState.COMPLETE for state in session.progress.snapshot().values())

    @pytest.mark.parametrize(
        "status, error_type",
        [
            (401, NotAuthenticatedError),
            (429, RateLimitedError),
            (402, PaymentRequiredError),
            (500, ChatRequestFailedError),
        ],
    )
    def test_failure_restores_transcript_and_clears_progress(self, status, error_type):
        earlier = [
            ChatTurn(role="user", content="hola"),
            ChatTurn(role="assistant", content="Hola, ¿en qué te ayudo?"),
        ]
        updates = []

        def handler(request):
            return httpx.Response(status, json={"error": "nope"})

        async def scenario(client):
            session = ChatSession(client, token="jwt", on_update=updates.append)
            session.transcript = list(earlier)
            with pytest.raises(error_type) as exc_info:
                await session.send("¿y mis exámenes?")
            return session, exc_info.value

        session, error = _run_with(handler, scenario)

        assert error.status_code == status
        assert session.transcript == earlier
        assert updates[-1] == earlier
        assert not session.progress.visible

    def test_empty_body_counts_as_failure(self):
        def handler(request):
            return httpx.Response(200, content=b"")

        async def scenario(client):
            session = ChatSession(client, token="jwt")
            with pytest.raises(ChatRequestFailedError):
                await session.send("hola")
            return session

        assert _run_with(handler, scenario).transcript == []

    def test_transport_error_is_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("offline")

        async def scenario(client):
            session = ChatSession(client, token="jwt")
            with pytest.raises(ChatRequestFailedError):
                await session.send("hola")
            return session

        session = _run_with(handler, scenario)
        assert session.transcript == []
        assert not session.progress.visible

    def test_blank_message_is_refused_locally(self):
        async def scenario(client):
            with pytest.raises(ValueError):
                await ChatSession(client).send("   ")

        _run_with(lambda request: httpx.Response(500), scenario)

    def test_refresh_suggestions(self):
        def handler(request):
            assert request.url.path == "/api/v1/chat/suggestions"
            assert json.loads(request.content)["conversationContext"] == []
            return httpx.Response(200, json={"suggestions": ["a?", "b?", "c?"]})

        async def scenario(client):
            return await ChatSession(client, token="jwt").refresh_suggestions()

        assert _run_with(handler, scenario) == ["a?", "b?", "c?"]

    def test_guest_session_sends_whole_transcript(self):
        patient_id = uuid4()
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            assert "Authorization" not in request.headers
            return httpx.Response(200, content=_sse("ok"))

        async def scenario(client):
            session = GuestChatSession(client, guest_token="tok", patient_user_id=patient_id)
            session.transcript = [ChatTurn(role="user", content="uno"), ChatTurn(role="assistant", content="1")]
            await session.send("dos")
            return session

        session = _run_with(handler, scenario)

        assert sent == [
            {
                "messages": [
                    {"role": "user", "content": "uno"},
                    {"role": "assistant", "content": "1"},
                    {"role": "user", "content": "dos"},
                ],
                "isGuestAccess": True,
                "guestToken": "tok",
                "targetUserId": str(patient_id),
            }
        ]
        assert session.suggestions == []


class TestProgressTracker:
    def test_stages_only_move_forward(self):
        seen = []
        tracker = ProgressTracker(on_change=seen.append)

        tracker.start()
        assert tracker.snapshot()[Stage.ANALYZING] == StageState.ACTIVE

        tracker.advance(Stage.DRAFTING)
        assert tracker.snapshot() == {
            Stage.ANALYZING: StageState.COMPLETE,
            Stage.SEARCHING: StageState.COMPLETE,
            Stage.DRAFTING: StageState.ACTIVE,
            Stage.VERIFYING: StageState.PENDING,
        }

        tracker.advance(Stage.SEARCHING)
        assert tracker.snapshot()[Stage.DRAFTING] == StageState.ACTIVE

        tracker.finish()
        assert set(tracker.snapshot().values()) == {StageState.COMPLETE}
        tracker.clear()
        assert not tracker.visible
        assert seen[-1] == {}


class TestContextCache:
    def _ctx(self, minutes=0, patient_id=None):
        stamp = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
        return CachedContext(patient_user_id=patient_id or uuid4(), updated_at=stamp)

    def test_empty_read_never_wipes_a_selection(self):
        pro = uuid4()
        selected = self._ctx()
        state = reduce({}, PatientSelected(pro, selected))
        state = reduce(state, ContextFetched(pro, None))
        assert state[pro] == selected

    def test_older_read_is_ignored_newer_read_wins(self):
        pro = uuid4()
        state = reduce({}, PatientSelected(pro, self._ctx(minutes=5)))
        older = self._ctx(minutes=1)
        newer = self._ctx(minutes=9)

        assert reduce(state, ContextFetched(pro, older))[pro] != older
        assert reduce(state, ContextFetched(pro, newer))[pro] == newer

    def test_explicit_clear_removes(self):
        pro = uuid4()
        state = reduce({}, PatientSelected(pro, self._ctx()))
        assert pro not in reduce(state, ContextCleared(pro))

    def test_reduce_does_not_mutate_input(self):
        pro = uuid4()
        original = {}
        reduce(original, PatientSelected(pro, self._ctx()))
        assert original == {}

    def test_payload_parsing(self):
        patient_id, clinic_id = uuid4(), uuid4()
        ctx = context_from_payload(
            {
                "currentPatientUserId": str(patient_id),
                "currentClinicId": str(clinic_id),
                "updatedAt": "2025-01-01T12:00:00Z",
                "patient": {"fullName": "Ana"},
            }
        )
        assert ctx.patient_user_id == patient_id
        assert ctx.clinic_id == clinic_id
        assert ctx.updated_at == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert context_from_payload({"currentPatientUserId": None}) is None

    def test_refresh_keeps_local_selection_on_empty_server_read(self):
        pro = uuid4()
        cache = ContextCache()
        selected = self._ctx()
        cache.dispatch(PatientSelected(pro, selected))

        def handler(request):
            return httpx.Response(200, json={"currentPatientUserId": None})

        result = _run_with(handler, lambda client: cache.refresh(client, pro, token="jwt"))
        assert result == selected
        assert cache.get(pro) == selected


class TestCountdown:
    @pytest.mark.parametrize(
        "seconds, shown",
        [(0, "00:00"), (-5, "00:00"), (65, "01:05"), (899, "14:59"), (3600, "1:00:00"), (3725, "1:02:05")],
    )
    def test_format(self, seconds, shown):
        assert format_remaining(seconds) == shown

    def test_run_ticks_down_and_expires_once(self):
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        readings = iter(start + timedelta(seconds=s) for s in (0, 1, 2, 3))
        ticks, expired = [], []

        countdown = GrantCountdown(
            start + timedelta(seconds=2),
            on_tick=ticks.append,
            on_expired=lambda: expired.append(True),
            clock=lambda: next(readings),
            interval=0,
        )
        asyncio.run(countdown.run())

        assert ticks == [2, 1, 0]
        assert expired == [True]

    def test_update_reanchors(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        countdown = GrantCountdown(now, clock=lambda: now)
        assert countdown.expired
        countdown.update(now + timedelta(minutes=15))
        assert countdown.remaining() == 900


class TestGuestPortal:
    def _against_app(self, app, coro_factory):
        async def run():
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
                return await coro_factory(client)

        return asyncio.run(run())

    def test_validate_then_chat_as_guest(self, app, db, patient_user, fake_gateway):
        grant = access_grant_service.create_grant(
            db, patient_user_id=patient_user.id, duration_minutes=15, allow_chat=True
        )
        fake_gateway.reply_with("Tienes ", "0 documentos.")

        async def scenario(client):
            portal = GuestPortal(client, grant.token)
            record = await portal.validate()
            session = portal.chat_session()
            reply = await session.send("¿Cuántos documentos tengo?")
            return portal, record, reply

        portal, record, reply = self._against_app(app, scenario)

        assert record["patient"]["fullName"] == "Ana Maria Perez"
        assert portal.can("allow_chat")
        assert not portal.can("allow_download")
        assert 0 < portal.countdown.remaining() <= 900
        assert reply == "Tienes 0 documentos."

    def test_chat_not_offered_without_permission(self, app, db, patient_user):
        grant = access_grant_service.create_grant(db, patient_user_id=patient_user.id, duration_minutes=15)

        async def scenario(client):
            portal = GuestPortal(client, grant.token)
            await portal.validate()
            return portal

        portal = self._against_app(app, scenario)
        with pytest.raises(GuestAccessError) as exc_info:
            portal.chat_session()
        assert exc_info.value.code == "FORBIDDEN"

    def test_revoked_link_reports_code(self, app, db, patient_user):
        grant = access_grant_service.create_grant(db, patient_user_id=patient_user.id, duration_minutes=15)
        access_grant_service.revoke_grant(db, grant_id=grant.id, patient_user_id=patient_user.id)

        async def scenario(client):
            with pytest.raises(GuestAccessError) as exc_info:
                await GuestPortal(client, grant.token).validate()
            return exc_info.value

        error = self._against_app(app, scenario)
        assert error.code == "NOT_FOUND"
        assert error.status_code == 404
