import asyncio
import json
from types import SimpleNamespace

import litellm
import pytest

from rewind.config_loader import ModelConfig
from rewind.router import ModelCallError, Router, to_chat_messages
from rewind.transcript import TextBlock, Transcript


def _response(content=None, tool_calls=None, total_tokens=12):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    usage = SimpleNamespace(prompt_tokens=8, completion_tokens=4, total_tokens=total_tokens)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=usage)


def _tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def _config(**overrides):
    values = dict(name="anthropic/claude-test", max_attempts=3, backoff_min=0, backoff_max=0)
    values.update(overrides)
    return ModelConfig(**values)


def test_transcript_translates_to_chat_format():
    t = Transcript(validate=True)
    t.append_user("list files")
    t.append_tool_request("call-1", "ls", {"path": "."})
    t.append_tool_result("call-1", {"ok": True, "data": ["a.py"]})
    t.append_assistant([TextBlock(text="one file")])

    messages = to_chat_messages(t, system_prompt="sys")

    assert messages[0] == {"role": "system", "content": "sys"}
    assert messages[1] == {"role": "user", "content": "list files"}
    assert messages[2]["role"] == "assistant"
    assert messages[2]["tool_calls"][0]["id"] == "call-1"
    assert json.loads(messages[2]["tool_calls"][0]["function"]["arguments"]) == {"path": "."}
    assert messages[3] == {"role": "tool", "tool_call_id": "call-1", "content": '{"ok":true,"data":["a.py"]}'}
    assert messages[4] == {"role": "assistant", "content": "one file"}


def test_orphaned_result_after_rollback_is_sent_as_user_text():
    t = Transcript(validate=True)
    request = t.append_tool_request("call-1", "bash", {})
    t.append_tool_result("call-1", {"aborted": True})
    t.rollback_to(request.id)

    messages = to_chat_messages(t, system_prompt="sys")

    assert messages[1]["role"] == "user"
    assert '{"aborted":true}' in messages[1]["content"]


def test_final_answer(monkeypatch):
    async def fake_acompletion(**kwargs):
        assert kwargs["model"] == "anthropic/claude-test"
        assert kwargs["tools"][0]["function"]["name"] == "ls"
        assert kwargs["temperature"] == 0.2
        return _response(content="all done")

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
    router = Router(_config())
    tools = [{"type": "function", "function": {"name": "ls", "parameters": {}}}]

    decision = asyncio.run(router.next_action("q", Transcript(), tools))

    assert decision.tool_call is None
    assert decision.blocks[0].text == "all done"
    assert decision.tokens_used == 12
    assert router.usage.call_count == 1
    assert router.usage.total_tokens == 12


def test_only_first_tool_call_is_used(monkeypatch):
    async def fake_acompletion(**kwargs):
        return _response(tool_calls=[
            _tool_call("call-1", "file_read", '{"path": "a.py"}'),
            _tool_call("call-2", "file_read", '{"path": "b.py"}'),
        ])

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

    decision = asyncio.run(Router(_config()).next_action("q", Transcript(), []))

    assert decision.tool_call.invocation_id == "call-1"
    assert decision.tool_call.tool_id == "file_read"
    assert decision.tool_call.args == {"path": "a.py"}


def test_reasoning_models_drop_temperature(monkeypatch):
    seen = {}

    async def fake_acompletion(**kwargs):
        seen.update(kwargs)
        return _response(content="ok")

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
    asyncio.run(Router(_config(name="openai/o3-mini")).next_action("q", Transcript(), []))

    assert "temperature" not in seen
    assert "tools" not in seen


def test_transient_errors_are_retried(monkeypatch):
    attempts = []

    async def flaky(**kwargs):
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("blip")
        return _response(content="finally")

    monkeypatch.setattr(litellm, "acompletion", flaky)
    monkeypatch.setattr(Router, "retryable_errors", (ConnectionError,))

    decision = asyncio.run(Router(_config()).next_action("q", Transcript(), []))

    assert len(attempts) == 3
    assert decision.blocks[0].text == "finally"


def test_exhausted_retries_raise_model_call_error(monkeypatch):
    attempts = []

    async def down(**kwargs):
        attempts.append(1)
        raise ConnectionError("still down")

    monkeypatch.setattr(litellm, "acompletion", down)
    monkeypatch.setattr(Router, "retryable_errors", (ConnectionError,))

    with pytest.raises(ModelCallError):
        asyncio.run(Router(_config(max_attempts=2)).next_action("q", Transcript(), []))
    assert len(attempts) == 2


def test_non_retryable_errors_fail_immediately(monkeypatch):
    attempts = []

    async def broken(**kwargs):
        attempts.append(1)
        raise ValueError("bad request")

    monkeypatch.setattr(litellm, "acompletion", broken)
    monkeypatch.setattr(Router, "retryable_errors", (ConnectionError,))

    with pytest.raises(ModelCallError):
        asyncio.run(Router(_config()).next_action("q", Transcript(), []))
    assert len(attempts) == 1
