import asyncio
import json

import pytest

from autochat.agents.auto_agent import AutoAgent
from autochat.domain.exceptions import ChatClosedError
from autochat.tools.executor import CommandExecutor, NopCommand, default_commands


@pytest.mark.asyncio
async def test_loop_stops_after_steps(scripted_chat):
    chat = scripted_chat([])
    agent = AutoAgent(chat, CommandExecutor({"talk": NopCommand("talk")}), steps=3)
    assert await agent.run("start") == 3
    assert chat.prompts[0] == "start"
    assert json.loads(chat.prompts[1]) == [{"talk": "received talk command"}]
    assert len(chat.prompts) == 3


@pytest.mark.asyncio
async def test_exit_command_stops_loop(tmp_path, scripted_chat):
    chat = scripted_chat(['[{"write": ["a.txt", "x"]}]', '[{"exit": "done"}]', '[{"talk": "never"}]'])
    stop = asyncio.Event()
    executor = CommandExecutor(default_commands(tmp_path, exit=stop.set), debug_dir=tmp_path)
    agent = AutoAgent(chat, executor, stop=stop)
    assert await agent.run("goal") == 2
    assert stop.is_set()
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "x"
    assert json.loads(chat.prompts[1]) == [{"write": "write file success"}]


@pytest.mark.asyncio
async def test_parse_failure_becomes_next_prompt(tmp_path, scripted_chat):
    chat = scripted_chat(["I forgot the format", '[{"talk": "sorry"}]'])
    agent = AutoAgent(chat, CommandExecutor({"talk": NopCommand("talk")}, debug_dir=tmp_path), steps=2)
    assert await agent.run("goal") == 2
    error = json.loads(chat.prompts[1])
    assert list(error[0]) == ["error"]
    assert "couldn't parse commands" in error[0]["error"]


@pytest.mark.asyncio
async def test_cancel_stops_loop_with_closed_chat(scripted_chat):
    cancel = asyncio.Event()

    class SlowChat(scripted_chat):
        async def _exchange(self, prompt):
            await asyncio.sleep(10)
            return "[]"

    chat = SlowChat([], cancel=cancel)
    agent = AutoAgent(chat, CommandExecutor({}), stop=cancel)
    task = asyncio.ensure_future(agent.run("goal"))
    await asyncio.sleep(0.05)
    cancel.set()
    with pytest.raises(ChatClosedError):
        await asyncio.wait_for(task, timeout=1)
