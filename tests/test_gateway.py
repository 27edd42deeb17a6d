from datetime import timedelta

import pytest

from livechat.errors import (
    EMPTY_MESSAGE,
    INVALID_MESSAGE_TYPE,
    INVALID_PAYLOAD,
    MISSING_REQUIRED_FIELDS,
    MISSING_USER_ID,
    NOT_CONNECTED,
    OPERATOR_NOT_FOUND,
    SESSION_CLOSED,
    SESSION_NOT_FOUND,
    UNKNOWN_COMMAND,
)
from livechat.models import OperatorStatus, SessionStatus, utcnow
from livechat.realtime.gateway import (
    COMMAND_ERROR,
    HISTORY,
    MESSAGE,
    NEW_MESSAGE_ALERT,
    NEW_SESSION_ALERT,
    OPERATOR_JOIN_CONFIRMED,
    OPERATOR_JOINED,
    OPERATOR_STATUS_CHANGED,
    PARTICIPANT_LEFT,
    SESSION_CREATED,
    SESSION_ENDED,
    TYPING_INDICATOR,
    Gateway,
)
from livechat.services.notifications import Notifier
from livechat.services.operators import OperatorRegistry


async def join_user(gateway, emitter, handle="u-sid", user_id="u1"):
    await gateway.handle(handle, "join-as-user", {"userId": user_id})
    return emitter.named(SESSION_CREATED, handle)[-1]["data"]["sessionId"]


def error_codes(emitter, handle):
    return [e["data"]["code"] for e in emitter.named(COMMAND_ERROR, handle)]


class TestUserCommands:
    @pytest.mark.asyncio
    async def test_join_twice_reuses_session(self, gateway, emitter):
        await gateway.handle("u-sid", "join-as-user", {"userId": "u1", "userName": "Ann"})
        await gateway.handle("u-sid-2", "join-as-user", {"userId": "u1"})

        first, second = emitter.named(SESSION_CREATED)
        assert first["data"]["sessionId"] == second["data"]["sessionId"]
        assert first["data"]["isNew"] is True
        assert second["data"]["isNew"] is False
        assert first["data"]["status"] == "waiting"
        assert len(emitter.named(HISTORY, "u-sid")) == 1

    @pytest.mark.asyncio
    async def test_first_message_activates_session(self, gateway, emitter, sessions):
        session_id = await join_user(gateway, emitter)

        await gateway.handle("u-sid", "send-user-message", {"content": "  hello  "})

        message = emitter.named(MESSAGE, "u-sid")[0]["data"]
        assert message["content"] == "hello"
        assert message["senderType"] == "user"
        assert (await sessions.get(session_id)).status == SessionStatus.ACTIVE

        emitter.clear()
        await gateway.handle("u-sid", "fetch-history", {"sessionId": session_id})
        history = emitter.named(HISTORY, "u-sid")[0]["data"]
        assert [m["content"] for m in history["messages"]] == ["hello"]
        assert history["pagination"]["total"] == 1

    @pytest.mark.asyncio
    async def test_new_session_alerts_connected_operators(self, gateway, emitter, make_operator):
        await make_operator("op-a")
        await gateway.handle("op-sid", "change-operator-status", {"operatorId": "op-a", "status": "online"})
        emitter.clear()

        session_id = await join_user(gateway, emitter)
        await gateway.handle("u-sid", "send-user-message", {"content": "hi"})

        assert emitter.named(NEW_SESSION_ALERT, "op-sid")[0]["data"]["sessionId"] == session_id
        assert emitter.named(NEW_MESSAGE_ALERT, "op-sid")[0]["data"]["content"] == "hi"

    @pytest.mark.asyncio
    async def test_notifications_are_queued(self, gateway, emitter, dispatcher, sender):
        session_id = await join_user(gateway, emitter)
        await gateway.handle("u-sid", "send-user-message", {"content": "hi"})

        await dispatcher.join()

        assert [p["type"] for p in sender.delivered] == ["new_chat", "new_message"]
        assert all(p["sessionId"] == session_id for p in sender.delivered)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "command, payload, code",
        [
            ("join-as-user", {}, MISSING_USER_ID),
            ("join-as-user", {"userId": "   "}, MISSING_USER_ID),
            ("join-as-user", "u1", INVALID_PAYLOAD),
            ("send-user-message", {"content": "hello"}, NOT_CONNECTED),
            ("join-as-operator", {"operatorId": "op-a"}, MISSING_REQUIRED_FIELDS),
            ("launch-rockets", {}, UNKNOWN_COMMAND),
        ],
    )
    async def test_rejections_reach_only_the_caller(self, gateway, emitter, command, payload, code):
        await gateway.handle("u-sid", command, payload)

        assert error_codes(emitter, "u-sid") == [code]
        assert len(emitter.events) == 1

    @pytest.mark.asyncio
    async def test_message_content_rules(self, gateway, emitter):
        await join_user(gateway, emitter)

        await gateway.handle("u-sid", "send-user-message", {"content": "   "})
        await gateway.handle("u-sid", "send-user-message", {"content": "x", "messageType": "system"})
        await gateway.handle("u-sid", "send-user-message", {"content": "x", "messageType": "video"})

        assert error_codes(emitter, "u-sid") == [EMPTY_MESSAGE, INVALID_MESSAGE_TYPE, INVALID_PAYLOAD]
        assert emitter.named(MESSAGE) == []

    @pytest.mark.asyncio
    async def test_internal_failures_become_command_errors(self, gateway, emitter, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("database gone")

        monkeypatch.setattr(gateway.sessions, "create_or_reuse", broken)

        await gateway.handle("u-sid", "join-as-user", {"userId": "u1"})

        assert error_codes(emitter, "u-sid") == ["INTERNAL_ERROR"]


class TestOperatorCommands:
    @pytest.mark.asyncio
    async def test_join_confirms_and_notifies_group(self, gateway, emitter, make_operator):
        await make_operator("op-a", name="Alice")
        session_id = await join_user(gateway, emitter)

        await gateway.handle("op-sid", "join-as-operator", {"operatorId": "op-a", "sessionId": session_id})

        confirmed = emitter.named(OPERATOR_JOIN_CONFIRMED, "op-sid")[0]["data"]
        assert confirmed["operatorName"] == "Alice"
        assert confirmed["sessionStatus"] == "active"
        assert confirmed["reconnected"] is False
        assert emitter.named(OPERATOR_JOINED, "u-sid")[0]["data"]["operatorId"] == "op-a"
        assert emitter.named(OPERATOR_JOINED, "op-sid") == []

        history = emitter.named(HISTORY, "op-sid")[0]["data"]["messages"]
        assert history[-1]["messageType"] == "system"
        assert "Alice" in history[-1]["content"]

    @pytest.mark.asyncio
    async def test_operator_message_reaches_group(self, gateway, emitter, make_operator, operators):
        await make_operator("op-a")
        session_id = await join_user(gateway, emitter)
        await gateway.handle("op-sid", "join-as-operator", {"operatorId": "op-a", "sessionId": session_id})
        emitter.clear()

        await gateway.handle(
            "op-sid", "send-operator-message", {"operatorId": "op-a", "sessionId": session_id, "content": "hi there"}
        )

        assert {e["handle"] for e in emitter.named(MESSAGE)} == {"u-sid", "op-sid"}
        assert emitter.named(MESSAGE, "u-sid")[0]["data"]["senderType"] == "operator"
        assert (await operators.get("op-a")).last_active_at is not None

    @pytest.mark.asyncio
    async def test_operator_message_rebinds_stale_connection(self, gateway, emitter, make_operator):
        await make_operator("op-a")
        session_id = await join_user(gateway, emitter)
        await gateway.handle("op-sid", "join-as-operator", {"operatorId": "op-a", "sessionId": session_id})

        await gateway.handle(
            "op-sid-new", "send-operator-message", {"operatorId": "op-a", "sessionId": session_id, "content": "back"}
        )

        assert gateway.registry.lookup("op-sid-new").session_id == session_id
        assert emitter.named(MESSAGE, "op-sid-new")

    @pytest.mark.asyncio
    async def test_send_to_unknown_session_keeps_binding(self, gateway, emitter, make_operator):
        await make_operator("op-a")
        session_id = await join_user(gateway, emitter)
        await gateway.handle("op-sid", "join-as-operator", {"operatorId": "op-a", "sessionId": session_id})

        await gateway.handle(
            "op-sid", "send-operator-message", {"operatorId": "op-a", "sessionId": "bogus", "content": "hi"}
        )

        assert error_codes(emitter, "op-sid") == [SESSION_NOT_FOUND]
        assert gateway.registry.lookup("op-sid").session_id == session_id
        emitter.clear()
        await gateway.handle("u-sid", "send-user-message", {"content": "still here"})
        assert emitter.named(MESSAGE, "op-sid")

    @pytest.mark.asyncio
    async def test_rejected_send_does_not_refresh_activity(self, gateway, emitter, make_operator, operators, sessions):
        idle_since = utcnow() - timedelta(hours=1)
        before = await make_operator("op-a", last_active_at=idle_since)
        session_id = await join_user(gateway, emitter)
        await sessions.close(session_id)

        await gateway.handle(
            "op-sid", "send-operator-message", {"operatorId": "op-a", "sessionId": session_id, "content": "hi"}
        )

        assert error_codes(emitter, "op-sid") == [SESSION_CLOSED]
        assert (await operators.get("op-a")).last_active_at == before.last_active_at
        assert gateway.registry.lookup("op-sid") is None

    @pytest.mark.asyncio
    async def test_send_as_unknown_operator_records_nothing(self, gateway, emitter, messages):
        session_id = await join_user(gateway, emitter)

        await gateway.handle(
            "op-sid", "send-operator-message", {"operatorId": "ghost", "sessionId": session_id, "content": "hi"}
        )

        assert error_codes(emitter, "op-sid") == [OPERATOR_NOT_FOUND]
        assert (await messages.history(session_id)).total == 0

    @pytest.mark.asyncio
    async def test_typing_is_relayed_to_others(self, gateway, emitter, make_operator):
        await make_operator("op-a")
        session_id = await join_user(gateway, emitter)
        await gateway.handle("op-sid", "join-as-operator", {"operatorId": "op-a", "sessionId": session_id})
        emitter.clear()

        await gateway.handle("op-sid", "typing", {"operatorId": "op-a", "sessionId": session_id})

        assert [e["handle"] for e in emitter.named(TYPING_INDICATOR)] == ["u-sid"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [None, "garbage", {}, {"sessionId": "s1"}, {"sessionId": 1, "operatorId": "a"}])
    async def test_typing_with_bad_payload_is_silent(self, gateway, emitter, payload):
        await gateway.handle("op-sid", "typing", payload)
        await gateway.handle("op-sid", "stop-typing", payload)

        assert emitter.events == []

    @pytest.mark.asyncio
    async def test_end_session_twice(self, gateway, emitter, make_operator, sessions):
        await make_operator("op-a")
        session_id = await join_user(gateway, emitter)
        await gateway.handle("op-sid", "join-as-operator", {"operatorId": "op-a", "sessionId": session_id})
        emitter.clear()

        await gateway.handle("op-sid", "end-session", {"operatorId": "op-a", "sessionId": session_id})

        ended = emitter.named(SESSION_ENDED)
        assert {e["handle"] for e in ended} == {"u-sid", "op-sid"}
        assert all(e["data"]["reason"] == "operator_ended" for e in ended)
        assert (await sessions.get(session_id)).status == SessionStatus.CLOSED
        assert gateway.registry.lookup("op-sid").session_id is None

        emitter.clear()
        await gateway.handle("op-sid", "end-session", {"operatorId": "op-a", "sessionId": session_id})

        again = emitter.named(SESSION_ENDED)
        assert [e["handle"] for e in again] == ["op-sid"]
        assert again[0]["data"]["reason"] == "already_closed"

    @pytest.mark.asyncio
    async def test_user_cannot_write_to_closed_session(self, gateway, emitter, make_operator):
        await make_operator("op-a")
        session_id = await join_user(gateway, emitter)
        await gateway.handle("op-sid", "end-session", {"operatorId": "op-a", "sessionId": session_id})

        await gateway.handle("u-sid", "send-user-message", {"content": "still there?"})

        assert error_codes(emitter, "u-sid") == [SESSION_CLOSED]

    @pytest.mark.asyncio
    async def test_reconnect(self, gateway, emitter, make_operator):
        await make_operator("op-a")
        session_id = await join_user(gateway, emitter)
        await gateway.handle("op-sid", "join-as-operator", {"operatorId": "op-a", "sessionId": session_id})

        await gateway.handle("op-sid-2", "reconnect-operator", {"operatorId": "op-a", "sessionId": session_id})

        confirmed = emitter.named(OPERATOR_JOIN_CONFIRMED, "op-sid-2")[0]["data"]
        assert confirmed["reconnected"] is True
        assert gateway.registry.lookup("op-sid-2").session_id == session_id

        await gateway.handle("op-sid-2", "end-session", {"operatorId": "op-a", "sessionId": session_id})
        await gateway.handle("op-sid-3", "reconnect-operator", {"operatorId": "op-a", "sessionId": session_id})

        assert error_codes(emitter, "op-sid-3") == [SESSION_CLOSED]

    @pytest.mark.asyncio
    async def test_going_online_lists_waiting_sessions(self, gateway, emitter, make_operator):
        await make_operator("op-a", status=OperatorStatus.OFFLINE)
        first = await join_user(gateway, emitter, "u-sid-1", "u1")
        second = await join_user(gateway, emitter, "u-sid-2", "u2")
        emitter.clear()

        await gateway.handle("op-sid", "change-operator-status", {"operatorId": "op-a", "status": "online"})

        changed = emitter.named(OPERATOR_STATUS_CHANGED)
        assert len(changed) == 1
        assert changed[0]["broadcast"] is True
        assert changed[0]["data"]["status"] == "online"
        assert [e["data"]["sessionId"] for e in emitter.named(NEW_SESSION_ALERT, "op-sid")] == [first, second]
        assert gateway.registry.lookup("op-sid").is_operator

    @pytest.mark.asyncio
    async def test_status_change_records_alias(self, sessions, messages, sessionmaker, emitter):
        registry = OperatorRegistry(sessionmaker, auto_provision=True)
        gateway = Gateway(sessions, messages, registry, notifier=Notifier(), emitter=emitter)

        await gateway.handle("op-sid", "change-operator-status", {"operatorId": "console-7", "status": "online"})

        operator_id = emitter.named(OPERATOR_STATUS_CHANGED)[0]["data"]["operatorId"]
        assert operator_id != "console-7"
        assert gateway.aliases.resolve("console-7") == operator_id

        session_id = await join_user(gateway, emitter)
        await gateway.handle("op-sid", "join-as-operator", {"operatorId": "console-7", "sessionId": session_id})

        assert (await sessions.get(session_id)).operator_id == operator_id


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_operator_leaving_goes_offline_once(self, gateway, emitter, make_operator, operators):
        await make_operator("op-a")
        session_id = await join_user(gateway, emitter)
        await gateway.handle("op-sid", "join-as-operator", {"operatorId": "op-a", "sessionId": session_id})
        emitter.clear()

        await gateway.disconnect("op-sid")
        await gateway.disconnect("op-sid")

        left = emitter.named(PARTICIPANT_LEFT)
        assert [e["handle"] for e in left] == ["u-sid"]
        assert left[0]["data"]["participantType"] == "operator"
        changed = emitter.named(OPERATOR_STATUS_CHANGED)
        assert len(changed) == 1
        assert changed[0]["data"]["status"] == "offline"
        assert (await operators.get("op-a")).status == OperatorStatus.OFFLINE
        assert gateway.registry.lookup("op-sid") is None

    @pytest.mark.asyncio
    async def test_operator_with_another_connection_stays_online(self, gateway, emitter, make_operator, operators):
        await make_operator("op-a")
        await gateway.handle("op-sid-1", "change-operator-status", {"operatorId": "op-a", "status": "online"})
        await gateway.handle("op-sid-2", "change-operator-status", {"operatorId": "op-a", "status": "online"})
        emitter.clear()

        await gateway.disconnect("op-sid-1")

        assert emitter.named(OPERATOR_STATUS_CHANGED) == []
        assert (await operators.get("op-a")).status == OperatorStatus.ONLINE

    @pytest.mark.asyncio
    async def test_user_leaving_notifies_operator(self, gateway, emitter, make_operator, operators):
        await make_operator("op-a")
        session_id = await join_user(gateway, emitter)
        await gateway.handle("op-sid", "join-as-operator", {"operatorId": "op-a", "sessionId": session_id})
        emitter.clear()

        await gateway.disconnect("u-sid")

        left = emitter.named(PARTICIPANT_LEFT)
        assert [e["handle"] for e in left] == ["op-sid"]
        assert left[0]["data"]["participantId"] == "u1"
        assert emitter.named(OPERATOR_STATUS_CHANGED) == []
        assert (await operators.get("op-a")).status == OperatorStatus.ONLINE

    @pytest.mark.asyncio
    async def test_unknown_handle(self, gateway, emitter):
        assert await gateway.disconnect("never-seen") == []
        assert emitter.events == []
