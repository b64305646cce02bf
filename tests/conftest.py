"""
共享的 pytest fixtures 和配置
"""

import base64
import itertools
import os
import shutil
import sys
import tempfile
from pathlib import Path

import pytest


@pytest.fixture(scope="session", autouse=True)
def _isolate_app_config():
    """Isolate on-disk config from developer machine.

    Tests should not read/write user home config.json.
    """

    tmp_cfg_dir = Path(tempfile.mkdtemp())
    os.environ["WHATSAPP_MANAGER_CONFIG_DIR"] = str(tmp_cfg_dir)
    try:
        yield
    finally:
        try:
            shutil.rmtree(tmp_cfg_dir, ignore_errors=True)
        finally:
            os.environ.pop("WHATSAPP_MANAGER_CONFIG_DIR", None)


# 添加项目根目录到 Python 路径
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from whatsapp_manager.core.config import AppConfig  # noqa: E402
from whatsapp_manager.core.drivers import MemoryEngine  # noqa: E402
from whatsapp_manager.core.manager import WhatsAppManager  # noqa: E402

ME = "15550000000@s.whatsapp.net"
ALICE = "15551111111@s.whatsapp.net"
BOB = "15552222222@s.whatsapp.net"
GROUP = "120363000000000000@g.us"

TEST_PASSWORD = "test_password_123"
POLL_SECRET = bytes(range(32))


def outgoing_body(content: dict) -> dict:
    """Translate a send command into the protocol body the session would echo"""
    if "text" in content:
        return {"conversation": content["text"]}
    if "image" in content:
        return {"imageMessage": {"caption": content.get("caption", ""), "mimetype": content["mimetype"]}}
    if "video" in content:
        return {"videoMessage": {"caption": content.get("caption", ""), "mimetype": content["mimetype"]}}
    if "audio" in content:
        return {"audioMessage": {"ptt": content.get("ptt", False), "mimetype": content["mimetype"]}}
    if "location" in content:
        return {"locationMessage": dict(content["location"])}
    if "poll" in content:
        poll = content["poll"]
        return {
            "pollCreationMessage": {
                "name": poll["name"],
                "options": [{"optionName": v} for v in poll["values"]],
                "selectableOptionsCount": poll["selectableCount"],
            },
            "messageContextInfo": {"messageSecret": base64.b64encode(POLL_SECRET).decode()},
        }
    return {}


class FakeAdapter:
    """Records outbound commands and emits synthetic raw session events"""

    def __init__(self, me_id: str = ME):
        self.me_id = me_id
        self.listeners = {}
        self.calls = []
        self.media = {}
        self.groups = {}
        self.fail = set()
        self.downloads = 0
        self._ids = itertools.count(1)
        self._clock = itertools.count(1700000100)

    def on(self, event, listener):
        self.listeners.setdefault(event, []).append(listener)

    async def emit(self, event, payload):
        for listener in self.listeners.get(event, []):
            await listener(payload)

    def _check(self, name):
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")

    async def send_message(self, cid, content, quoted=None):
        self.calls.append(("send_message", cid, content))
        self._check("send_message")
        return {
            "key": {"remoteJid": cid, "id": f"SENT{next(self._ids)}", "fromMe": True},
            "message": outgoing_body(content),
            "messageTimestamp": next(self._clock),
            "status": 1,
        }

    async def read_messages(self, keys):
        self.calls.append(("read_messages", keys))
        self._check("read_messages")

    async def download_media(self, message):
        self.downloads += 1
        self._check("download_media")
        return self.media[message["key"]["id"]]

    async def group_metadata(self, cid):
        self.calls.append(("group_metadata", cid))
        self._check("group_metadata")
        return self.groups[cid]

    async def chat_modify(self, cid, modification):
        self.calls.append(("chat_modify", cid, modification))
        self._check("chat_modify")

    async def group_leave(self, cid):
        self.calls.append(("group_leave", cid))
        self._check("group_leave")

    async def profile_picture_url(self, jid):
        self._check("profile_picture_url")
        return f"https://pps.example/{jid.split('@')[0]}.jpg"

    async def fetch_status(self, jid):
        self._check("fetch_status")
        return "available"


def raw_message(cid, mid, body, timestamp=1700000000, from_me=False, participant=None, **extra):
    """Build one ``messages.upsert`` entry"""
    key = {"remoteJid": cid, "id": mid, "fromMe": from_me}
    if participant:
        key["participant"] = participant
    if isinstance(body, str):
        body = {"conversation": body}
    return {"key": key, "message": body, "messageTimestamp": timestamp, **extra}


def upsert(*messages):
    return {"messages": list(messages), "type": "notify"}


class Recorder:
    """Collects emitted domain events as (name, args) tuples"""

    def __init__(self, manager, *names):
        self.events = []
        for name in names:
            manager.on(name, self._listener(name))

    def _listener(self, name):
        def listener(*args):
            self.events.append((name, args))

        return listener

    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture
def test_password() -> str:
    """返回测试用的应用密码"""
    return TEST_PASSWORD


@pytest.fixture
def temp_dir():
    """创建临时目录，测试后自动清理"""
    tmp = tempfile.mkdtemp()
    yield Path(tmp)
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def storage_dir(temp_dir: Path) -> Path:
    """Create a temporary storage directory for engine tests"""
    storage = temp_dir / "data"
    storage.mkdir(parents=True, exist_ok=True)
    return storage


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(storage_backend="memory", backfill_timeout=0.2, log_level="WARNING")


@pytest.fixture
def manager(adapter: FakeAdapter, config: AppConfig) -> WhatsAppManager:
    """Manager over an in-memory engine, driven by a FakeAdapter"""
    return WhatsAppManager(adapter, MemoryEngine(), config)


@pytest.fixture
def offline_manager(config: AppConfig) -> WhatsAppManager:
    return WhatsAppManager(None, MemoryEngine(), config)
