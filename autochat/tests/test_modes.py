import asyncio
import io
import json

import pytest

from autochat.agents.modes import load_bulk_input, run_auto, run_bulk, run_chat, run_cmd, run_pair
from autochat.config.settings import Settings
from autochat.domain.exceptions import ValidationError


def _settings(tmp_path, **kwargs):
    base = {
        "output_dir": str(tmp_path / "out"),
        "log_dir": str(tmp_path / "logs"),
        "debug_dir": str(tmp_path / "debug"),
        "bing_session_file": str(tmp_path / "missing-session.yaml"),
    }
    base.update(kwargs)
    return Settings(_env_file=None, **base)


def test_load_bulk_input_json(tmp_path):
    path = tmp_path / "in.json"
    path.write_text(json.dumps(["one", "", ["a", "", "b"], []]), encoding="utf-8")
    assert load_bulk_input(path) == [["one"], ["a", "b"]]

    path.write_text(json.dumps([1]), encoding="utf-8")
    with pytest.raises(ValidationError):
        load_bulk_input(path)


def test_load_bulk_input_text(tmp_path):
    path = tmp_path / "in.txt"
    path.write_text("q1\nq2\n\nq3\n\n\n", encoding="utf-8")
    assert load_bulk_input(path) == [["q1", "q2"], ["q3"]]


@pytest.mark.asyncio
async def test_run_bulk_uses_fresh_chat_per_group(tmp_path, scripted_chat, fake_factory):
    src = tmp_path / "in.txt"
    src.write_text("q1\nq2\n\nq3", encoding="utf-8")
    dst = tmp_path / "res" / "out.json"
    cfg = _settings(tmp_path, bulk_input=str(src), bulk_output=str(dst))
    first, second = scripted_chat(["a1", "a2"]), scripted_chat(["a3"])
    factory = fake_factory(first, second)

    assert await run_bulk(cfg, asyncio.Event(), factory=factory) == 2
    assert json.loads(dst.read_text(encoding="utf-8")) == [
        [{"in": "q1", "out": "a1"}, {"in": "q2", "out": "a2"}],
        [{"in": "q3", "out": "a3"}],
    ]
    assert first.is_closed and second.is_closed
    assert factory.closed


@pytest.mark.asyncio
async def test_run_bulk_requires_files(tmp_path):
    with pytest.raises(ValidationError):
        await run_bulk(_settings(tmp_path), asyncio.Event())


@pytest.mark.asyncio
async def test_run_cmd_prints_results(tmp_path):
    cfg = _settings(tmp_path, prompt='[{"write": ["x.txt", "hi"]}, {"bing": "q"}]')
    out = io.StringIO()
    results = await run_cmd(cfg, asyncio.Event(), out=out)
    assert results == [{"write": "write file success"}, {"bing": "sorry, not available"}]
    assert json.loads(out.getvalue()) == results
    assert (tmp_path / "out" / "x.txt").read_text(encoding="utf-8") == "hi"


@pytest.mark.asyncio
async def test_run_auto_without_session_uses_no_bing_prompt(tmp_path, scripted_chat, fake_factory):
    cfg = _settings(tmp_path, goal="write a poem", steps=5)
    chat = scripted_chat(['[{"write": ["poem.txt", "roses"]}, {"exit": "done"}]'])
    factory = fake_factory(chat)
    cancel = asyncio.Event()

    assert await run_auto(cfg, cancel, factory=factory) == 1
    assert cancel.is_set()
    assert factory.opened[0]["role"] == "system"
    assert factory.opened[0]["keep_first"] == 1
    first_prompt = chat.prompts[0]
    assert "write a poem" in first_prompt
    assert '{"bing"' not in first_prompt
    assert (tmp_path / "out" / "poem.txt").read_text(encoding="utf-8") == "roses"
    assert list((tmp_path / "logs").glob("log_*.txt"))
    assert chat.is_closed


@pytest.mark.asyncio
async def test_run_auto_requires_goal(tmp_path):
    with pytest.raises(ValidationError):
        await run_auto(_settings(tmp_path), asyncio.Event())


@pytest.mark.asyncio
async def test_run_pair_stops_on_exit_phrase(tmp_path, scripted_chat, fake_factory):
    cfg = _settings(tmp_path, goal="plan a trip")
    leader = scripted_chat(["what do you think?", "great, exit-igogpt"])
    peer = scripted_chat(["go to the beach"])
    factory = fake_factory(leader, peer)

    assert await run_pair(cfg, asyncio.Event(), factory=factory) == 2
    assert "plan a trip" in leader.prompts[0]
    assert leader.prompts[1] == "go to the beach"
    assert peer.prompts == ["what do you think?"]
    assert leader.is_closed and peer.is_closed


@pytest.mark.asyncio
async def test_run_chat_prints_replies(tmp_path, scripted_chat, fake_factory):
    async def lines():
        for line in ["hello\n", "\n", "bye\n"]:
            yield line

    chat = scripted_chat(["hi!\n", "see you\n"])
    out = io.StringIO()
    await run_chat(_settings(tmp_path), asyncio.Event(), lines=lines(), out=out, factory=fake_factory(chat))
    assert out.getvalue() == "hi!\nsee you\n"
    assert chat.prompts == ["hello", "bye"]
