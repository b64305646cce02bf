"""
Tests for structured logging, locks and the domain event emitter
"""

import asyncio
import json
import logging

from whatsapp_manager.core.emitter import EventEmitter
from whatsapp_manager.core.locks import KeyedLock
from whatsapp_manager.core.log import JsonFormatter, correlation, get_correlation_id, get_logger


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("whatsapp_manager.test", logging.WARNING, __file__, 1, message, None, None)
    for name, value in extra.items():
        setattr(record, name, value)
    return record


class TestJsonFormatter:
    def test_fields(self):
        data = json.loads(JsonFormatter().format(make_record("hello")))

        assert data["level"] == "WARNING"
        assert data["logger"] == "whatsapp_manager.test"
        assert data["message"] == "hello"
        assert "correlationId" not in data

    def test_correlation_id(self):
        with correlation("messages.upsert:7"):
            data = json.loads(JsonFormatter().format(make_record("inside")))

        assert data["correlationId"] == "messages.upsert:7"
        assert get_correlation_id() is None

    def test_extra_fields(self):
        data = json.loads(JsonFormatter().format(make_record("x", extra_fields={"cid": "c1"})))

        assert data["cid"] == "c1"

    def test_single_handler(self):
        logger = get_logger("whatsapp_manager.test.handlers")
        get_logger("whatsapp_manager.test.handlers")

        assert len(logger.handlers) == 1


class TestCorrelationInPipeline:
    def test_each_event_gets_its_own_id(self, manager, adapter):
        seen = []
        manager.on("contact:created", lambda contact: seen.append(get_correlation_id()))

        async def scenario():
            await adapter.emit("contacts.upsert", [{"id": "1@s.whatsapp.net"}])
            await adapter.emit("contacts.upsert", [{"id": "2@s.whatsapp.net"}])

        asyncio.run(scenario())
        assert seen == ["contacts.upsert:1", "contacts.upsert:2"]


class TestKeyedLock:
    def test_serializes_same_key(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("message:c1/m1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        async def scenario():
            await asyncio.gather(worker("a"), worker("b"))

        asyncio.run(scenario())
        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    def test_different_keys_interleave(self):
        locks = KeyedLock()
        order = []

        async def worker(key):
            async with locks.hold(key):
                order.append(f"{key}-in")
                await asyncio.sleep(0)
                order.append(f"{key}-out")

        async def scenario():
            await asyncio.gather(worker("a"), worker("b"))

        asyncio.run(scenario())
        assert order == ["a-in", "b-in", "a-out", "b-out"]

    def test_locked(self):
        locks = KeyedLock()

        async def scenario():
            async with locks.hold("k"):
                return locks.locked("k")

        assert asyncio.run(scenario()) is True
        assert locks.locked("k") is False


class TestEventEmitter:
    def test_failing_listener_is_isolated(self):
        emitter = EventEmitter()
        calls = []

        def broken(*args):
            raise ValueError("boom")

        emitter.on("chat:deleted", broken)
        emitter.on("chat:deleted", lambda cid: calls.append(cid))

        delivered = asyncio.run(emitter.emit("chat:deleted", "c1"))

        assert calls == ["c1"]
        assert delivered == 1

    def test_unsubscribe(self):
        emitter = EventEmitter()
        calls = []
        off = emitter.on("open", lambda: calls.append(1))

        off()
        asyncio.run(emitter.emit("open"))

        assert calls == []
        assert emitter.listener_count("open") == 0
