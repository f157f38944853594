"""
Conversation titles: sanitizing, first-exchange detection, storage and the
detached job that produces them.
"""

import asyncio

from app.background import tasks
from app.background.tasks import spawn_detached
from app.models.conversation import ChatMessage, Conversation, MessageRole
from app.services import chat_service
from app.services.ai_gateway import AIGatewayError
from app.services.chat_service import DEFAULT_TITLE, sanitize_title
from app.services.chat_stream_service import make_reply_store


def _conversation(db, user, title=None) -> Conversation:
    return chat_service.create_conversation(db, user_id=user.id, patient_user_id=user.id, title=title)


def _turn(db, conversation, user, role, content="texto"):
    return chat_service.persist_message(
        db, conversation_id=conversation.id, user_id=user.id, role=role, content=content
    )


async def _drain_detached() -> None:
    while tasks._detached:
        await asyncio.gather(*list(tasks._detached))


class TestSanitizeTitle:
    def test_strips_markdown_quotes_and_trailing_punctuation(self):
        assert sanitize_title('"**Resultados de laboratorio.**"') == "Resultados de laboratorio"
        assert sanitize_title("## Dolor de cabeza:") == "Dolor de cabeza"

    def test_keeps_first_line_and_five_words(self):
        raw = "Control de glucosa en ayunas del mes\nSegunda linea"
        assert sanitize_title(raw) == "Control de glucosa en ayunas"

    def test_blank_answers_fall_back_to_placeholder(self):
        assert sanitize_title(None) == DEFAULT_TITLE
        assert sanitize_title("") == DEFAULT_TITLE
        assert sanitize_title("   ") == DEFAULT_TITLE
        assert sanitize_title("###") == DEFAULT_TITLE


class TestDeriveTitle:
    def test_uses_the_first_message(self, fake_gateway):
        fake_gateway.completions = ['"Dolor lumbar cronico"']

        title = asyncio.run(chat_service.derive_title(fake_gateway, "Me duele la espalda baja"))

        assert title == "Dolor lumbar cronico"
        assert "Me duele la espalda baja" in fake_gateway.complete_calls[0][-1]["content"]

    def test_gateway_failure_gives_placeholder(self, fake_gateway, caplog):
        fake_gateway.complete_error = AIGatewayError("Rate limit exceeded. Please try again later.", 429)

        with caplog.at_level("WARNING", logger="app.services.chat_service"):
            title = asyncio.run(chat_service.derive_title(fake_gateway, "hola"))

        assert title == "Medical consultation"
        assert any("Title generation failed" in m for m in caplog.messages)


class TestFirstExchange:
    def test_only_user_turns_is_still_first(self, db, patient_user):
        conversation = _conversation(db, patient_user)
        _turn(db, conversation, patient_user, MessageRole.USER)
        assert chat_service.is_first_exchange(db, conversation.id) is True

        # a refused send left a second user turn behind
        _turn(db, conversation, patient_user, MessageRole.USER)
        assert chat_service.is_first_exchange(db, conversation.id) is True

    def test_answered_conversation_is_not_first(self, db, patient_user):
        conversation = _conversation(db, patient_user)
        _turn(db, conversation, patient_user, MessageRole.USER)
        _turn(db, conversation, patient_user, MessageRole.ASSISTANT)
        _turn(db, conversation, patient_user, MessageRole.USER)
        assert chat_service.is_first_exchange(db, conversation.id) is False

    def test_titled_conversation_is_not_first(self, db, patient_user):
        conversation = _conversation(db, patient_user, title="Mi control")
        _turn(db, conversation, patient_user, MessageRole.USER)
        assert chat_service.is_first_exchange(db, conversation.id) is False


class TestStoreTitle:
    def test_title_is_stored_once(self, db, session_factory, patient_user):
        conversation = _conversation(db, patient_user)

        assert chat_service.store_title(session_factory, conversation_id=conversation.id, title="Primero") is True
        assert chat_service.store_title(session_factory, conversation_id=conversation.id, title="Segundo") is False

        db.expire_all()
        assert db.get(Conversation, conversation.id).title == "Primero"

    def test_user_title_is_never_overwritten(self, db, session_factory, patient_user):
        created = _conversation(db, patient_user, title="Mi control")
        renamed = _conversation(db, patient_user)
        chat_service.rename_conversation(db, conversation_id=renamed.id, user_id=patient_user.id, title="Renombrada")

        for conversation in (created, renamed):
            stored = chat_service.store_title(session_factory, conversation_id=conversation.id, title="Generado")
            assert stored is False

        db.expire_all()
        assert db.get(Conversation, created.id).title == "Mi control"
        assert db.get(Conversation, renamed.id).title == "Renombrada"


class TestReplyStore:
    def test_first_exchange_stores_reply_then_title(self, db, session_factory, patient_user, fake_gateway):
        conversation = _conversation(db, patient_user)
        fake_gateway.completions = ["Resultados de hemograma"]
        store = make_reply_store(
            session_factory=session_factory,
            gateway=fake_gateway,
            conversation_id=conversation.id,
            user_id=patient_user.id,
            first_message="¿Qué dice mi hemograma?",
        )

        async def scenario():
            message_id = await store("Todo en rango.")
            await _drain_detached()
            return message_id

        message_id = asyncio.run(scenario())

        db.expire_all()
        assert db.get(ChatMessage, message_id).content == "Todo en rango."
        stored = db.get(Conversation, conversation.id)
        assert stored.title == "Resultados de hemograma"
        assert stored.title_generated is True
        assert len(fake_gateway.complete_calls) == 1

    def test_later_exchange_asks_for_no_title(self, db, session_factory, patient_user, fake_gateway):
        conversation = _conversation(db, patient_user)
        store = make_reply_store(
            session_factory=session_factory,
            gateway=fake_gateway,
            conversation_id=conversation.id,
            user_id=patient_user.id,
            first_message=None,
        )

        async def scenario():
            await store("Respuesta")
            await _drain_detached()

        asyncio.run(scenario())

        assert fake_gateway.complete_calls == []
        db.expire_all()
        assert db.get(Conversation, conversation.id).title is None

    def test_placeholder_title_when_gateway_fails(self, db, session_factory, patient_user, fake_gateway):
        conversation = _conversation(db, patient_user)
        fake_gateway.complete_error = AIGatewayError("AI credits exhausted. Payment required.", 402)
        store = make_reply_store(
            session_factory=session_factory,
            gateway=fake_gateway,
            conversation_id=conversation.id,
            user_id=patient_user.id,
            first_message="hola",
        )

        async def scenario():
            await store("Respuesta")
            await _drain_detached()

        asyncio.run(scenario())

        db.expire_all()
        assert db.get(Conversation, conversation.id).title == "Medical consultation"

    def test_empty_reply_stores_nothing(self, db, session_factory, patient_user, fake_gateway):
        conversation = _conversation(db, patient_user)
        store = make_reply_store(
            session_factory=session_factory,
            gateway=fake_gateway,
            conversation_id=conversation.id,
            user_id=patient_user.id,
            first_message="hola",
        )

        assert asyncio.run(store("")) is None
        assert db.query(ChatMessage).count() == 0
        assert fake_gateway.complete_calls == []


class TestSpawnDetached:
    def test_failing_task_is_logged_and_yields_none(self, caplog):
        async def explode():
            raise RuntimeError("boom")

        async def scenario():
            return await spawn_detached(explode(), name="exploding-job")

        with caplog.at_level("WARNING", logger="app.background.tasks"):
            result = asyncio.run(scenario())

        assert result is None
        assert "Detached task 'exploding-job' failed" in caplog.messages

    def test_result_is_returned_and_reference_released(self):
        async def answer():
            return 42

        async def scenario():
            task = spawn_detached(answer(), name="answer")
            assert task in tasks._detached
            value = await task
            await asyncio.sleep(0)
            return value, task in tasks._detached

        value, still_tracked = asyncio.run(scenario())

        assert value == 42
        assert still_tracked is False
