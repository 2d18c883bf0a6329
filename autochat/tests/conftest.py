import pytest

from autochat.providers.base import BaseChatStream


class ScriptedChat(BaseChatStream):
    """按顺序返回预设回复，记录收到的 prompt。"""

    name = "scripted"

    def __init__(self, replies=None, cancel=None):
        super().__init__(cancel)
        self.replies = list(replies or [])
        self.prompts = []

    async def _exchange(self, prompt):
        self.prompts.append(prompt)
        if not self.replies:
            return '[{"talk": "idle"}]'
        return self.replies.pop(0)


class FakeFactory:
    """替代 ChatFactory：按打开顺序返回预先准备好的对话。"""

    def __init__(self, *chats):
        self.chats = list(chats)
        self.opened = []
        self.closed = False

    async def open(self, role="user", keep_first=0, ai=None):
        chat = self.chats.pop(0) if self.chats else ScriptedChat()
        self.opened.append({"role": role, "keep_first": keep_first, "ai": ai, "chat": chat})
        return chat

    async def aclose(self):
        self.closed = True


@pytest.fixture
def scripted_chat():
    return ScriptedChat


@pytest.fixture
def fake_factory():
    return FakeFactory
