"""
Tests for whatsapp_manager.core.manager - WhatsAppManager facade
"""

import asyncio
import json

from whatsapp_manager.models.chat import MessageStatus

from conftest import ALICE, BOB, GROUP, ME, Recorder, raw_message, upsert


def run(coro):
    return asyncio.run(coro)


def seed(manager, adapter, *messages):
    run(adapter.emit("messages.upsert", upsert(*messages)))


class TestQueries:
    def test_contact_by_phone(self, manager, adapter):
        run(adapter.emit("contacts.upsert", [{"id": ALICE, "notify": "Alice"}]))

        assert run(manager.contact("15551111111")).name == "Alice"

    def test_contacts_most_recent_first(self, manager, adapter):
        async def scenario():
            await adapter.emit("contacts.upsert", [{"id": ALICE}, {"id": BOB}])
            await adapter.emit("contacts.update", [{"id": ALICE, "status": "hey"}])
            return await manager.contacts()

        assert [c.id for c in run(scenario())] == [ALICE, BOB]

    def test_chat_from_known_contact(self, manager, adapter):
        recorder = Recorder(manager, "chat:created")
        run(adapter.emit("contacts.upsert", [{"id": BOB, "notify": "Bob"}]))

        chat = run(manager.chat("15552222222"))

        assert chat.id == BOB
        assert chat.name == "Bob"
        assert recorder.names() == ["chat:created"]

    def test_chat_unknown(self, manager):
        assert run(manager.chat("nobody@s.whatsapp.net")) is None

    def test_messages_paginate(self, manager, adapter):
        seed(manager, adapter, *(raw_message(ALICE, f"m{i}", str(i), 100 + i) for i in range(5)))

        page = run(manager.messages(ALICE, offset=1, limit=2))

        assert [m.id for m in page] == ["m3", "m2"]

    def test_votes_of_non_poll(self, manager, adapter):
        seed(manager, adapter, raw_message(ALICE, "m1", "hi"))

        assert run(manager.votes(ALICE, "m1")) == []

    def test_group_members(self, manager, adapter):
        adapter.groups[GROUP] = {"participants": [{"id": ALICE, "admin": "admin"}, {"id": BOB}]}
        run(adapter.emit("contacts.upsert", [{"id": ALICE, "notify": "Alice"}]))
        recorder = Recorder(manager, "contact:created")

        members = run(manager.members(GROUP))

        assert [m.id for m in members] == [ALICE, BOB]
        assert run(manager.contact(BOB)) is not None
        assert recorder.names() == ["contact:created"]

    def test_direct_members(self, manager, adapter):
        run(adapter.emit("contacts.upsert", [{"id": ALICE}]))

        assert [m.id for m in run(manager.members(ALICE))] == [ALICE, ME]

    def test_members_metadata_failure(self, manager, adapter):
        adapter.fail.add("group_metadata")

        assert run(manager.members(GROUP)) == []


class TestSending:
    def test_send_text_persists_through_pipeline(self, manager, adapter):
        recorder = Recorder(manager, "message:created")

        message = run(manager.send_text("15551111111", "hello"))

        assert message.cid == ALICE
        assert message.me is True
        assert message.caption == "hello"
        assert message.status is MessageStatus.SERVER_ACK
        assert adapter.calls[-1] == ("send_message", ALICE, {"text": "hello"})
        assert recorder.names() == ["message:created"]
        assert run(manager.messages(ALICE)) == [message]

    def test_send_image_seeds_cache(self, manager, adapter):
        message = run(manager.send_image(ALICE, b"\xff\xd8jpeg", caption="look"))

        assert message.type == "image"
        assert message.caption == "look"
        assert run(manager.content(ALICE, message.id)) == b"\xff\xd8jpeg"
        assert adapter.downloads == 0

    def test_send_audio_and_video(self, manager, adapter):
        audio = run(manager.send_audio(ALICE, b"ogg", ptt=True))
        video = run(manager.send_video(ALICE, b"mp4", caption="clip"))

        assert audio.type == "audio"
        assert video.type == "video"
        assert video.mime == "video/mp4"

    def test_send_location(self, manager, adapter):
        message = run(manager.send_location(ALICE, -34.6, -58.4))

        assert message.type == "location"
        assert json.loads(run(manager.content(ALICE, message.id))) == {"lat": -34.6, "lng": -58.4}

    def test_send_poll_and_count(self, manager, adapter):
        message = run(manager.send_poll(GROUP, "Lunch?", ["Pizza", "Sushi"]))

        assert message.type == "poll"
        assert run(manager.votes(GROUP, message.id)) == [
            {"name": "Pizza", "count": 0},
            {"name": "Sushi", "count": 0},
        ]

    def test_quoted_reply(self, manager, adapter):
        seed(manager, adapter, raw_message(ALICE, "m1", "question"))
        captured = {}

        async def send_message(cid, content, quoted=None):
            captured["quoted"] = quoted
            return None

        adapter.send_message = send_message
        run(manager.send_text(ALICE, "answer", quoted_mid="m1"))

        assert captured["quoted"]["key"]["id"] == "m1"

    def test_send_failure_returns_none(self, manager, adapter):
        adapter.fail.add("send_message")

        assert run(manager.send_text(ALICE, "hello")) is None
        assert run(manager.messages(ALICE)) == []

    def test_offline(self, offline_manager):
        assert run(offline_manager.send_text(ALICE, "hello")) is None
        assert run(offline_manager.pin(ALICE)) is False


class TestMessageActions:
    def test_react(self, manager, adapter):
        seed(manager, adapter, raw_message(ALICE, "m1", "hi"))

        assert run(manager.react(ALICE, "m1", "👍")) is True
        _, cid, content = adapter.calls[-1]
        assert content["react"] == {"text": "👍", "key": {"remoteJid": ALICE, "id": "m1", "fromMe": False}}

    def test_react_unknown(self, manager):
        assert run(manager.react(ALICE, "ghost", "👍")) is False

    def test_edit_own_text(self, manager, adapter):
        sent = run(manager.send_text(ALICE, "helo"))

        assert run(manager.edit(ALICE, sent.id, "hello")) is True

        edited = run(manager.message(ALICE, sent.id))
        assert edited.caption == "hello"
        assert edited.edited is True
        assert adapter.calls[-1][2]["edit"]["id"] == sent.id

    def test_edit_rejects_foreign_messages(self, manager, adapter):
        seed(manager, adapter, raw_message(ALICE, "m1", "theirs"))

        assert run(manager.edit(ALICE, "m1", "mine now")) is False

    def test_remove_message(self, manager, adapter):
        sent = run(manager.send_text(ALICE, "oops"))
        recorder = Recorder(manager, "message:deleted")

        assert run(manager.remove_message(ALICE, sent.id)) is True

        assert run(manager.message(ALICE, sent.id)) is None
        assert recorder.events == [("message:deleted", (ALICE, sent.id))]
        assert adapter.calls[-1][2] == {"delete": sent.key}

    def test_remove_message_keeps_record_when_revoke_fails(self, manager, adapter):
        sent = run(manager.send_text(ALICE, "oops"))
        adapter.fail.add("send_message")

        assert run(manager.remove_message(ALICE, sent.id)) is False
        assert run(manager.message(ALICE, sent.id)) is not None

    def test_forward_text(self, manager, adapter):
        seed(manager, adapter, raw_message(ALICE, "m1", "pass it on"))

        forwarded = run(manager.forward(ALICE, "m1", BOB))

        assert forwarded.cid == BOB
        assert forwarded.caption == "pass it on"

    def test_forward_media(self, manager, adapter):
        adapter.media["img"] = b"png"
        seed(manager, adapter, raw_message(ALICE, "img", {"imageMessage": {"caption": "c", "mimetype": "image/png"}}))

        forwarded = run(manager.forward(ALICE, "img", BOB))

        assert adapter.calls[-1][2] == {"image": b"png", "caption": "c", "mimetype": "image/png"}
        assert run(manager.content(BOB, forwarded.id)) == b"png"

    def test_seen_newest(self, manager, adapter):
        seed(manager, adapter, raw_message(ALICE, "m1", "a", 1), raw_message(ALICE, "m2", "b", 2))

        assert run(manager.seen(ALICE)) is True
        assert adapter.calls[-1] == ("read_messages", [{"remoteJid": ALICE, "id": "m2", "fromMe": False}])

    def test_seen_empty_chat(self, manager):
        assert run(manager.seen(ALICE)) is False


class TestChatActions:
    def test_pin_archive_mute(self, manager, adapter):
        seed(manager, adapter, raw_message(ALICE, "m1", "a", 7))

        assert run(manager.pin(ALICE)) is True
        assert run(manager.archive(ALICE)) is True
        assert run(manager.mute(ALICE, 3600)) is True

        modifications = [call[2] for call in adapter.calls if call[0] == "chat_modify"]
        assert modifications[0] == {"pin": True}
        assert modifications[1]["archive"] is True
        assert modifications[1]["lastMessages"][0]["messageTimestamp"] == 7
        assert modifications[2] == {"mute": 3600000}

    def test_chat_modify_failure(self, manager, adapter):
        adapter.fail.add("chat_modify")

        assert run(manager.mute(ALICE, None)) is False

    def test_remove_group_leaves_and_cascades(self, manager, adapter):
        seed(manager, adapter, raw_message(GROUP, "m1", "bye", participant=BOB))
        recorder = Recorder(manager, "chat:deleted")

        assert run(manager.remove_chat(GROUP)) is True

        assert ("group_leave", GROUP) in adapter.calls
        assert run(manager.store.get_chat(GROUP)) is None
        assert run(manager.message(GROUP, "m1")) is None
        assert recorder.names() == ["chat:deleted"]

    def test_remove_direct_chat(self, manager, adapter):
        seed(manager, adapter, raw_message(ALICE, "m1", "bye"))

        assert run(manager.remove_chat(ALICE)) is True

        assert adapter.calls[-1][2]["delete"] is True
        assert run(manager.chats()) == []


class TestContactActions:
    def test_rename(self, manager, adapter):
        run(adapter.emit("contacts.upsert", [{"id": ALICE, "notify": "Alice"}]))
        recorder = Recorder(manager, "contact:updated")

        assert run(manager.rename_contact("15551111111", "Ali")) is True

        contact = run(manager.contact(ALICE))
        assert contact.custom_name == "Ali"
        assert contact.display_name == "Ali"
        assert contact.name == "Alice"
        assert recorder.names() == ["contact:updated"]

    def test_rename_survives_remote_update(self, manager, adapter):
        run(adapter.emit("contacts.upsert", [{"id": ALICE, "notify": "Alice"}]))
        run(manager.rename_contact(ALICE, "Ali"))

        run(adapter.emit("contacts.update", [{"id": ALICE, "notify": "Alice R."}]))

        assert run(manager.contact(ALICE)).custom_name == "Ali"

    def test_rename_unknown(self, manager):
        assert run(manager.rename_contact(BOB, "B")) is False

    def test_refresh(self, manager, adapter):
        run(adapter.emit("contacts.upsert", [{"id": ALICE}]))

        contact = run(manager.refresh_contact(ALICE))

        assert contact.photo == "https://pps.example/15551111111.jpg"
        assert contact.content == "available"

    def test_refresh_partial_failure(self, manager, adapter):
        run(adapter.emit("contacts.upsert", [{"id": ALICE, "status": "old"}]))
        adapter.fail.add("fetch_status")

        contact = run(manager.refresh_contact(ALICE))

        assert contact.photo is not None
        assert contact.content == "old"


class TestObservation:
    def test_watch_filters_one_message(self, manager, adapter):
        seen = []
        seed(manager, adapter, raw_message(ALICE, "m1", "a"), raw_message(ALICE, "m2", "b"))
        unsubscribe = manager.watch(ALICE, "m1", lambda event, *args: seen.append(event))

        async def scenario():
            for mid in ("m1", "m2"):
                await adapter.emit(
                    "messages.update",
                    [{"key": {"remoteJid": ALICE, "id": mid}, "update": {"status": 3}}],
                )
            await adapter.emit("messages.delete", {"keys": [{"remoteJid": ALICE, "id": "m1"}]})

        run(scenario())
        assert seen == ["message:status", "message:deleted"]

        unsubscribe()
        assert all(manager.events.listener_count(e) == 0 for e in ("message:status", "message:deleted"))

    def test_async_listener(self, manager, adapter):
        seen = []

        async def listener(message):
            await asyncio.sleep(0)
            seen.append(message.id)

        manager.on("message:created", listener)
        seed(manager, adapter, raw_message(ALICE, "m1", "a"))

        assert seen == ["m1"]

    def test_close(self, manager):
        run(manager.close())
