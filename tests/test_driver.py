import asyncio

import pytest

from rewind.checkpoints import CheckpointError
from rewind.checkpoints.environment import CheckpointingEnvironment
from rewind.config_loader import PermissionConfig
from rewind.driver import Driver
from rewind.event_bus import EventBus, EventType
from rewind.fsm import AgentState
from rewind.permissions import PermissionGate
from rewind.router import ModelCallError
from rewind.state import SessionState, attach_checkpoint_sync
from rewind.tools import build_default_registry
from tests.fakes import (
    FakeEnvironment,
    RecordingCheckpointStore,
    ScriptedModelClient,
    final_decision,
    tool_decision,
)

S = AgentState


def _setup(script, prompt=None, config=None, files=None):
    bus = EventBus()
    env = FakeEnvironment(files=dict(files or {}))
    store = RecordingCheckpointStore(log=env.log)
    session = SessionState(
        session_id="s1",
        environment=CheckpointingEnvironment(env, store, "s1", bus),
    )
    attach_checkpoint_sync(session, bus)
    registry = build_default_registry(bus)
    gate = PermissionGate(registry, config or PermissionConfig(), prompt=prompt)
    model = ScriptedModelClient(script=list(script))
    driver = Driver(session, model, registry, gate)
    return driver, session, env, store, model, bus


async def _wait_for(predicate):
    for _ in range(1000):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def test_scenario_a_plain_answer():
    driver, session, env, store, model, _ = _setup([final_decision("42")])

    result = asyncio.run(driver.run("what is the answer?"))

    assert driver.states == [S.IDLE, S.WAITING_FOR_MODEL, S.COMPLETE]
    assert result.response == "42"
    assert not result.aborted
    roles = [m.role for m in session.transcript]
    assert roles == ["user", "assistant"]
    assert store.snapshots == []
    assert store.inits == 0


def test_scenario_b_file_edit_checkpoints_once_before_edit():
    driver, session, env, store, _, _ = _setup(
        [
            tool_decision("file_edit", "call-1", path="a.py", search="x = 1", replace="x = 2"),
            final_decision("edited"),
        ],
        config=PermissionConfig(fast_edit_mode=True),
        files={"a.py": "x = 1\n"},
    )

    result = asyncio.run(driver.run("bump x"))

    assert driver.states == [
        S.IDLE,
        S.WAITING_FOR_MODEL,
        S.WAITING_FOR_TOOL_RESULT,
        S.WAITING_FOR_MODEL_FINAL,
        S.COMPLETE,
    ]
    assert result.response == "edited"
    assert env.files["a.py"] == "x = 2\n"
    assert len(store.snapshots) == 1
    assert env.log == ["init", "snapshot:edit_file:call-1", "edit_file:call-1"]

    messages = session.transcript.messages
    assert len(messages) == 4
    assert messages[1].tool_use.id == "call-1"
    assert messages[2].tool_result.tool_use_id == "call-1"
    # The result was recorded after the snapshot landed
    assert messages[1].checkpoint_id is None
    assert messages[2].checkpoint_id == "chk-1"


def test_scenario_c_cancel_mid_tool_synthesises_aborted_result():
    async def scenario():
        driver, session, env, store, _, _ = _setup(
            [tool_decision("bash", "call-1", command="sleep 100")],
            prompt=lambda tool_id, args: True,
        )
        env.gate = asyncio.Event()
        task = asyncio.ensure_future(driver.run("run it"))

        await _wait_for(lambda: "execute_command:call-1" in env.log)
        session.cancel()
        result = await task
        return driver, session, store, result

    driver, session, store, result = asyncio.run(scenario())

    assert result.aborted
    assert driver.state is S.ABORTED
    assert S.WAITING_FOR_TOOL_RESULT in driver.states
    last_two = session.transcript.messages[-2:]
    assert last_two[0].tool_use.id == "call-1"
    assert last_two[1].tool_result.tool_use_id == "call-1"
    assert last_two[1].tool_result.content == '{"aborted":true}'
    assert len(store.snapshots) == 1


def test_cancel_while_waiting_for_model():
    async def scenario():
        driver, session, _, store, model, _ = _setup([])
        model.hang = True
        task = asyncio.ensure_future(driver.run("think hard"))
        await _wait_for(lambda: model.calls)
        session.cancel()
        return driver, session, await task

    driver, session, result = asyncio.run(scenario())

    assert result.aborted
    assert driver.states[-1] is S.ABORTED
    assert [m.role for m in session.transcript] == ["user"]


def test_already_cancelled_never_calls_model():
    driver, session, _, _, model, _ = _setup([final_decision("nope")])
    session.cancel()

    result = asyncio.run(driver.run("hello"))

    assert result.aborted
    assert driver.states == [S.IDLE, S.WAITING_FOR_MODEL, S.ABORTED]
    assert model.calls == []


def test_permission_denied_becomes_tool_failure():
    driver, session, env, store, _, _ = _setup(
        [tool_decision("bash", "call-1", command="rm -rf /"), final_decision("ok, I won't")],
        prompt=lambda tool_id, args: False,
    )

    result = asyncio.run(driver.run("clean up"))

    assert result.response == "ok, I won't"
    assert result.tool_results[0].ok is False
    assert result.tool_results[0].error == "Permission denied for tool: bash"
    assert env.commands == []
    assert store.snapshots == []
    assert session.last_tool_error.tool_id == "bash"


def test_tool_failure_is_fed_back_and_loop_continues():
    driver, session, env, store, model, _ = _setup(
        [
            tool_decision("file_edit", "call-1", path="a.py", search="missing", replace="y"),
            final_decision("could not find it"),
        ],
        config=PermissionConfig(danger_mode=True),
        files={"a.py": "x = 1\n"},
    )

    result = asyncio.run(driver.run("edit"))

    assert driver.state is S.COMPLETE
    assert "EditPatternNotFound" in result.tool_results[0].error
    assert session.last_tool_error.error == result.tool_results[0].error
    # Snapshot still precedes the attempted mutation
    assert env.log == ["init", "snapshot:edit_file:call-1", "edit_file:call-1"]
    # The model saw the failure on its second call
    assert model.calls[1]["length"] == 3


def test_snapshot_failure_blocks_mutation():
    driver, session, env, store, _, _ = _setup(
        [
            tool_decision("file_write", "call-1", path="a.py", content="boom"),
            final_decision("gave up"),
        ],
        config=PermissionConfig(danger_mode=True),
    )
    store.fail_snapshot = CheckpointError("shadow repo is broken")

    result = asyncio.run(driver.run("write"))

    assert "a.py" not in env.files
    assert "write_file:call-1" not in env.log
    assert result.tool_results[0].ok is False
    assert "CheckpointError" in result.tool_results[0].error


def test_tool_chaining_and_read_only_tools_skip_snapshots():
    driver, session, env, store, _, _ = _setup(
        [
            tool_decision("file_read", "call-1", path="a.py"),
            tool_decision("file_write", "call-2", path="b.py", content="new"),
            tool_decision("glob", "call-3", pattern="*.py"),
            final_decision("done"),
        ],
        config=PermissionConfig(fast_edit_mode=True),
        files={"a.py": "print(1)"},
    )

    asyncio.run(driver.run("copy"))

    assert driver.states.count(S.WAITING_FOR_TOOL_RESULT) == 3
    assert [m.reason for m in store.snapshots] == ["write_file"]
    assert len(session.transcript) == 8
    assert env.files["b.py"] == "new"


def test_model_error_propagates_with_consistent_transcript():
    driver, session, _, _, _, _ = _setup([ModelCallError("rate limited")])

    with pytest.raises(ModelCallError):
        asyncio.run(driver.run("hi"))

    assert [m.role for m in session.transcript] == ["user"]


def test_query_already_appended_is_not_duplicated():
    driver, session, _, _, _, _ = _setup([final_decision("hi")])
    session.transcript.append_user("hello")

    asyncio.run(driver.run("hello"))

    assert [m.text for m in session.transcript] == ["hello", "hi"]


def test_unknown_tool_goes_to_prompt_and_fails_cleanly():
    driver, session, _, _, _, _ = _setup(
        [tool_decision("teleport", "call-1"), final_decision("no such tool")],
        prompt=lambda tool_id, args: True,
    )

    result = asyncio.run(driver.run("go"))

    assert "Unknown tool: teleport" in result.tool_results[0].error
    assert driver.state is S.COMPLETE


def test_tool_events_are_emitted():
    driver, _, _, _, _, bus = _setup(
        [tool_decision("ls", "call-1", path="."), final_decision("listed")],
    )
    seen = []
    bus.subscribe(lambda event: seen.append(event.event_type))

    asyncio.run(driver.run("list"))

    assert seen == [EventType.TOOL_STARTED, EventType.TOOL_COMPLETED]


def test_driver_is_single_use():
    driver, _, _, _, _, _ = _setup([final_decision("one")])
    asyncio.run(driver.run("first"))
    with pytest.raises(RuntimeError):
        asyncio.run(driver.run("second"))
