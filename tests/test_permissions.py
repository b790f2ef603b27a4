import asyncio

from rewind.config_loader import PermissionConfig
from rewind.event_bus import EventBus, EventType
from rewind.permissions import PermissionGate
from rewind.tools import build_default_registry


def _gate(prompt=None, bus=None, **config):
    calls = []

    def recording_prompt(tool_id, args):
        calls.append(tool_id)
        return prompt(tool_id, args) if prompt else True

    gate = PermissionGate(
        build_default_registry(),
        PermissionConfig(**config),
        prompt=recording_prompt,
        bus=bus,
        session_id="s1",
    )
    return gate, calls


def _ask(gate, tool_id, args=None):
    return asyncio.run(gate.request_permission(tool_id, args or {}))


def test_danger_mode_grants_everything_without_asking():
    gate, calls = _gate(lambda *_: False, danger_mode=True)
    assert _ask(gate, "bash")
    assert _ask(gate, "not-a-tool")
    assert calls == []


def test_unknown_tool_always_asks():
    gate, calls = _gate(lambda *_: False)
    assert not _ask(gate, "teleport")
    assert calls == ["teleport"]


def test_always_ask_beats_fast_mode():
    gate, calls = _gate(fast_edit_mode=True, always_ask=["file_edit"])
    assert _ask(gate, "file_edit")
    assert calls == ["file_edit"]


def test_tool_flag_always_asks():
    gate, calls = _gate(fast_edit_mode=True, fast_mode_category="shell_execution")
    _ask(gate, "bash")
    assert calls == ["bash"]


def test_fast_mode_grants_configured_category():
    gate, calls = _gate(lambda *_: False, fast_edit_mode=True)
    assert _ask(gate, "file_write")
    assert _ask(gate, "file_edit")
    assert calls == []


def test_readonly_tools_need_no_consent():
    gate, calls = _gate(lambda *_: False)
    assert _ask(gate, "file_read")
    assert _ask(gate, "glob")
    assert calls == []


def test_default_falls_back_to_prompt():
    gate, calls = _gate(lambda *_: False)
    assert not _ask(gate, "file_write", {"path": "a"})
    assert calls == ["file_write"]


def test_async_prompt_is_awaited():
    async def prompt(tool_id, args):
        await asyncio.sleep(0)
        return True

    gate = PermissionGate(build_default_registry(), PermissionConfig(), prompt=prompt)
    assert _ask(gate, "file_write")


def test_no_prompt_denies():
    gate = PermissionGate(build_default_registry(), PermissionConfig())
    assert not _ask(gate, "file_write")
    assert _ask(gate, "ls")


def test_prompting_emits_permission_requested():
    bus = EventBus()
    seen = []
    bus.subscribe(seen.append)
    gate, _ = _gate(bus=bus)

    _ask(gate, "bash", {"command": "ls"})
    _ask(gate, "glob", {"pattern": "*"})

    assert [e.event_type for e in seen] == [EventType.PERMISSION_REQUESTED]
    assert seen[0].payload["tool_id"] == "bash"
