"""Tests for the container runner. Uses FakeProcess to simulate subprocess behavior."""

from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from berth.config import ContainerConfig
from berth.container_runner import ControllerState, SessionHostController
from berth.container_runner._mounts import _build_container_args, _build_volume_mounts
from berth.container_runner._orchestrator import (
    oneshot_container_name,
    resolve_hard_timeout,
    run_container_agent,
)
from berth.container_runner._process import (
    _CappedBuffer,
    _classify_exit,
    _ExitInfo,
    read_stderr,
)
from berth.container_runner._serialization import _input_to_dict, _parse_container_output
from berth.errors import ConfigurationError
from berth.types import (
    AdditionalMount,
    ContainerInput,
    ContainerOutput,
    GroupContainerConfig,
    RegisteredGroup,
    VolumeMount,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

TEST_GROUP = RegisteredGroup(
    jid="test@g.us",
    name="Test Group",
    folder="test-group",
    trigger="@berth",
    added_at="2024-01-01T00:00:00.000Z",
)

TEST_INPUT = ContainerInput(
    prompt="Hello",
    group_folder="test-group",
    chat_jid="test@g.us",
    is_main=False,
)

_CR_ORCH = "berth.container_runner._orchestrator"
_CR_CTRL = "berth.container_runner._controller"


def _record(payload: dict[str, Any]) -> bytes:
    return f"---OUTPUT-START---\n{json.dumps(payload)}\n---OUTPUT-END---\n".encode()


class FakeStdin:
    def __init__(self) -> None:
        self.data = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Simulates asyncio.subprocess.Process for testing."""

    def __init__(self) -> None:
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._returncode: int | None = None
        self._wait_event = asyncio.Event()
        self.pid = 12345
        self._killed = False

    def emit_stdout(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def emit_stderr(self, data: bytes) -> None:
        self.stderr.feed_data(data)

    def close(self, code: int = 0) -> None:
        """Simulate process exit."""
        if self._returncode is not None:
            return
        self._returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._wait_event.set()

    async def wait(self) -> int:
        await self._wait_event.wait()
        return self._returncode  # type: ignore[return-value]

    def kill(self) -> None:
        self._killed = True

    @property
    def returncode(self) -> int | None:
        return self._returncode


@pytest.fixture
async def fake_proc():
    """Must be async so StreamReader is created on the test's event loop."""
    return FakeProcess()


@contextlib.contextmanager
def _patch_subprocess(*procs: FakeProcess, calls: list[tuple] | None = None):
    """Hand out the given fake processes, in order, to each spawn."""
    queue = list(procs)

    async def _fake_create(*args: Any, **kwargs: Any) -> FakeProcess:
        assert kwargs.get("stdin") == asyncio.subprocess.PIPE
        if calls is not None:
            calls.append(args)
        return queue.pop(0)

    with patch(f"{_CR_ORCH}.asyncio.create_subprocess_exec", _fake_create):
        yield


async def _fake_stop(proc: Any, name: str) -> None:
    proc.close(137)


# ---------------------------------------------------------------------------
# Unit tests: pure helpers
# ---------------------------------------------------------------------------


class TestInputSerialization:
    def test_required_fields_only(self):
        assert _input_to_dict(TEST_INPUT) == {
            "prompt": "Hello",
            "group_folder": "test-group",
            "chat_jid": "test@g.us",
            "is_main": False,
        }

    def test_optional_fields_included_when_set(self):
        inp = ContainerInput(
            prompt="p",
            group_folder="g",
            chat_jid="j",
            is_main=True,
            session_id="s1",
            resume_at="msg-9",
            is_scheduled_task=True,
            allowed_tools=["Bash"],
            system_prompt_append="be brief",
            mcp_servers={"fs": {"command": "fs-server"}},
        )
        d = _input_to_dict(inp)
        assert d["session_id"] == "s1"
        assert d["resume_at"] == "msg-9"
        assert d["is_scheduled_task"] is True
        assert d["allowed_tools"] == ["Bash"]
        assert d["system_prompt_append"] == "be brief"
        assert d["mcp_servers"] == {"fs": {"command": "fs-server"}}


class TestOutputParsing:
    def test_full_record(self):
        out = _parse_container_output(
            '{"status": "error", "result": "UnknownError: boom", "newSessionId": "s"}'
        )
        assert out == ContainerOutput(
            status="error", result="UnknownError: boom", new_session_id="s"
        )

    def test_snake_case_session_key_is_not_wire_format(self):
        out = _parse_container_output(
            '{"status": "success", "result": "ok", "new_session_id": "s"}'
        )
        assert out.new_session_id is None

    def test_error_key_on_the_wire_is_ignored(self):
        out = _parse_container_output('{"status": "error", "result": null, "error": "boom"}')
        assert out == ContainerOutput(status="error")

    def test_rejects_unknown_status(self):
        with pytest.raises(ValueError):
            _parse_container_output('{"status": "done"}')


class TestCappedBuffer:
    def test_truncates_once(self):
        buf = _CappedBuffer(5)
        assert buf.append("abc") is False
        assert buf.append("defg") is True
        assert buf.text == "abcde"
        assert buf.append("more") is False
        assert buf.truncated


class TestNamesAndTimeouts:
    def test_unsafe_characters_replaced(self):
        name = oneshot_container_name("my group/1")
        assert name.startswith("berth-my-group-1-")

    def test_timeout_never_below_idle_plus_grace(self, use_settings):
        use_settings(container_timeout=60.0, idle_timeout=120.0)
        assert resolve_hard_timeout(TEST_GROUP) == 150.0

    def test_group_timeout_wins_when_longer(self, use_settings):
        use_settings(container_timeout=60.0, idle_timeout=10.0)
        group = RegisteredGroup(
            jid="g@g.us",
            name="G",
            folder="g",
            container_config=GroupContainerConfig(timeout=600.0),
        )
        assert resolve_hard_timeout(group) == 600.0


class TestMounts:
    def test_group_and_ipc_dirs(self, tmp_path: Path):
        mounts = _build_volume_mounts(TEST_GROUP)
        assert mounts[0] == VolumeMount(
            str(tmp_path / "groups" / "test-group"), "/workspace/group", readonly=False
        )
        assert mounts[1] == VolumeMount(
            str(tmp_path / "data" / "ipc" / "test-group"), "/workspace/ipc", readonly=False
        )
        assert (tmp_path / "data" / "ipc" / "test-group" / "input").is_dir()

    def test_additional_mount_validated(self, tmp_path: Path):
        shared = tmp_path / "shared"
        shared.mkdir()
        group = RegisteredGroup(
            jid="g@g.us",
            name="G",
            folder="g",
            container_config=GroupContainerConfig(
                additional_mounts=[
                    AdditionalMount(host_path=str(shared)),
                    AdditionalMount(host_path=str(tmp_path / "missing")),
                    AdditionalMount(host_path=str(shared), container_path="../escape"),
                ]
            ),
        )
        mounts = _build_volume_mounts(group)
        assert len(mounts) == 3
        assert mounts[2] == VolumeMount(str(shared.resolve()), "/workspace/extra/shared", True)

    def test_container_args(self):
        mounts = [
            VolumeMount("/host/rw", "/workspace/group", readonly=False),
            VolumeMount("/host/ro", "/workspace/extra/ro", readonly=True),
        ]
        args = _build_container_args(
            mounts, "berth-x-1", {"BERTH_SDK_BACKEND": "opencode", "BERTH_MODEL": "a/b"}
        )
        assert args[:5] == ["run", "-i", "--rm", "--name", "berth-x-1"]
        assert args[5:9] == ["-e", "BERTH_MODEL=a/b", "-e", "BERTH_SDK_BACKEND=opencode"]
        assert "-v" in args and "/host/rw:/workspace/group" in args
        assert "type=bind,source=/host/ro,target=/workspace/extra/ro,readonly" in args
        assert args[-1] == "berth-agent:latest"


class TestClassifyExit:
    @staticmethod
    def _info(**kw: Any) -> _ExitInfo:
        defaults: dict[str, Any] = {
            "exit_code": 0,
            "stderr": "",
            "stderr_truncated": False,
            "timeout_kind": None,
            "timeout_secs": 30.0,
            "duration_ms": 10.0,
            "output_count": 0,
            "last_output": None,
            "last_session_id": None,
        }
        defaults.update(kw)
        return _ExitInfo(**defaults)

    def test_output_then_crash_is_success(self):
        last = ContainerOutput(status="success", result="r", new_session_id="s1")
        out = _classify_exit(
            self._info(exit_code=1, output_count=1, last_output=last, last_session_id="s1"),
            "G",
            "c",
            streaming=True,
        )
        assert out == ContainerOutput(status="success", result=None, new_session_id="s1")

    def test_legacy_mode_carries_last_result(self):
        last = ContainerOutput(status="error", result="SessionError: partial")
        out = _classify_exit(
            self._info(output_count=1, last_output=last), "G", "c", streaming=False
        )
        assert out.status == "success"
        assert out.result == "SessionError: partial"

    def test_timeout_without_output(self):
        out = _classify_exit(
            self._info(exit_code=137, timeout_kind="hard", timeout_secs=1800.0),
            "G",
            "c",
            streaming=True,
        )
        assert out.status == "error"
        assert out.error == "Container timed out after 1800s (hard timeout) with no output"

    def test_stderr_tail_in_error(self):
        out = _classify_exit(
            self._info(exit_code=2, stderr="x" * 500 + "the end"), "G", "c", streaming=True
        )
        assert out.error is not None
        assert out.error.startswith("Container exited with code 2: ")
        assert out.error.endswith("the end")
        assert len(out.error) == len("Container exited with code 2: ") + 200


# ---------------------------------------------------------------------------
# Controller: deadlines and states
# ---------------------------------------------------------------------------


class TestSessionHostController:
    @staticmethod
    def _controller(proc: FakeProcess, **kw: Any) -> SessionHostController:
        params: dict[str, Any] = {
            "container_name": "berth-test",
            "group_name": "Test Group",
            "hard_timeout": 60.0,
            "idle_timeout": 60.0,
            "tick_interval": 0.01,
            "max_output_size": 1024 * 1024,
        }
        params.update(kw)
        return SessionHostController(proc, **params)  # type: ignore[arg-type]

    def test_record_restarts_both_deadlines(self, fake_proc: FakeProcess):
        ctrl = self._controller(fake_proc, hard_timeout=40.0, idle_timeout=30.0)
        ctrl._hard_deadline = 40.0
        ctrl._idle_deadline = 30.0
        assert ctrl.expired(5.0) is None
        assert ctrl.expired(30.0) == "idle"

        ctrl.note_record(25.0)
        assert ctrl._idle_deadline == 55.0
        assert ctrl._hard_deadline == 65.0
        # Past both original deadlines, still short of the restarted ones
        assert ctrl.expired(50.0) is None
        assert ctrl.expired(55.0) == "idle"

    def test_nearer_deadline_wins(self, fake_proc: FakeProcess):
        ctrl = self._controller(fake_proc)
        ctrl._hard_deadline = 50.0
        ctrl._idle_deadline = 80.0
        assert ctrl.expired(50.0) == "hard"
        ctrl._idle_deadline = 40.0
        assert ctrl.expired(45.0) == "idle"

    async def test_states_for_a_clean_run(self, fake_proc: FakeProcess):
        ctrl = self._controller(fake_proc)

        async def _driver():
            await asyncio.sleep(0.01)
            fake_proc.emit_stdout(_record({"status": "success", "result": "a"}))
            await asyncio.sleep(0.01)
            fake_proc.emit_stdout(_record({"status": "success", "result": "b"}))
            await asyncio.sleep(0.01)
            fake_proc.close(0)

        driver = asyncio.create_task(_driver())
        info = await ctrl.run()
        await driver
        ctrl.mark_exited()

        assert info.output_count == 2
        assert ctrl.history == [
            ControllerState.STARTING,
            ControllerState.RUNNING,
            ControllerState.IDLE,
            ControllerState.AWAITING_OUTPUT,
            ControllerState.IDLE,
            ControllerState.CLOSING_SUCCESS,
            ControllerState.EXITED,
        ]

    async def test_nonzero_exit_without_output_closes_with_error(self, fake_proc: FakeProcess):
        ctrl = self._controller(fake_proc)
        fake_proc.close(3)
        info = await ctrl.run()
        assert info.exit_code == 3
        assert ctrl.state is ControllerState.CLOSING_ERROR

    async def test_hard_deadline_fires_without_output(self, fake_proc: FakeProcess):
        ctrl = self._controller(fake_proc, hard_timeout=0.05, idle_timeout=10.0)

        with patch(f"{_CR_CTRL}._graceful_stop", _fake_stop):
            info = await ctrl.run()

        assert info.timeout_kind == "hard"
        assert info.timeout_secs == 0.05
        assert info.output_count == 0
        assert ctrl.state is ControllerState.CLOSING_TIMEOUT

    async def test_record_outlives_original_hard_deadline(self, fake_proc: FakeProcess):
        ctrl = self._controller(fake_proc, hard_timeout=0.4, idle_timeout=0.3)
        stop = AsyncMock(side_effect=_fake_stop)

        async def _driver():
            await asyncio.sleep(0.2)
            fake_proc.emit_stdout(
                _record({"status": "success", "result": "turn", "newSessionId": "s"})
            )
            # Past the original 0.4s hard deadline; the restarted idle one is at ~0.5s
            await asyncio.sleep(0.25)
            assert fake_proc.returncode is None
            stop.assert_not_awaited()

        with patch(f"{_CR_CTRL}._graceful_stop", stop):
            driver = asyncio.create_task(_driver())
            info = await ctrl.run()
            await driver

        stop.assert_awaited_once()
        assert info.timeout_kind == "idle"
        assert info.output_count == 1

    async def test_idle_deadline_fires_after_quiet_period(self, fake_proc: FakeProcess):
        ctrl = self._controller(fake_proc, hard_timeout=30.0, idle_timeout=0.05)
        fake_proc.emit_stdout(_record({"status": "success", "result": "only"}))

        with patch(f"{_CR_CTRL}._graceful_stop", _fake_stop):
            info = await ctrl.run()

        assert info.timeout_kind == "idle"
        assert info.timeout_secs == 0.05
        assert info.output_count == 1

    async def test_multibyte_character_split_across_reads(self, fake_proc: FakeProcess):
        on_output = AsyncMock()
        ctrl = self._controller(fake_proc, on_output=on_output)
        raw = (
            "---OUTPUT-START---\n"
            '{"status": "success", "result": "h\u00e9llo"}\n'
            "---OUTPUT-END---\n"
        ).encode()
        cut = raw.index(b"\xc3") + 1

        async def _driver():
            fake_proc.emit_stdout(raw[:cut])
            await asyncio.sleep(0.02)
            fake_proc.emit_stdout(raw[cut:])
            await asyncio.sleep(0.01)
            fake_proc.close(0)

        driver = asyncio.create_task(_driver())
        info = await ctrl.run()
        await driver

        on_output.assert_awaited_once_with(ContainerOutput(status="success", result="h\u00e9llo"))
        assert "\ufffd" not in ctrl.stdout
        assert info.output_count == 1


class TestReadStderr:
    async def test_multibyte_character_split_across_reads(self):
        stream = asyncio.StreamReader()
        reader = asyncio.create_task(read_stderr(stream, 1024, "G"))

        stream.feed_data("caf\u00e9 ok\n".encode()[:4])
        await asyncio.sleep(0.01)
        stream.feed_data("caf\u00e9 ok\n".encode()[4:])
        stream.feed_eof()
        buf = await reader

        assert buf.text == "caf\u00e9 ok\n"
        assert not buf.truncated


# ---------------------------------------------------------------------------
# Integration tests: run_container_agent with FakeProcess
# ---------------------------------------------------------------------------


class TestRunContainerAgent:
    async def test_success_then_exit(self, fake_proc: FakeProcess, tmp_path: Path):
        on_output = AsyncMock()
        seen: list[tuple[Any, str]] = []
        calls: list[tuple] = []

        with _patch_subprocess(fake_proc, calls=calls):

            async def _driver():
                await asyncio.sleep(0.01)
                fake_proc.emit_stdout(
                    _record({"status": "success", "result": "Hi", "newSessionId": "s1"})
                )
                await asyncio.sleep(0.01)
                fake_proc.close(0)

            driver = asyncio.create_task(_driver())
            result = await run_container_agent(
                TEST_GROUP,
                TEST_INPUT,
                on_process=lambda p, n: seen.append((p, n)),
                on_output=on_output,
            )
            await driver

        assert result == ContainerOutput(status="success", result=None, new_session_id="s1")
        on_output.assert_awaited_once_with(
            ContainerOutput(status="success", result="Hi", new_session_id="s1")
        )

        assert seen[0][0] is fake_proc
        assert seen[0][1].startswith("berth-test-group-")
        assert calls[0][0] == "docker"
        assert calls[0][1:3] == ("run", "-i")
        assert "BERTH_SDK_BACKEND=claude" in calls[0]

        assert json.loads(fake_proc.stdin.data) == _input_to_dict(TEST_INPUT)
        assert fake_proc.stdin.closed
        assert list((tmp_path / "groups" / "test-group" / "logs").glob("container-*.log"))

    async def test_timeout_with_no_output_is_error(self, fake_proc: FakeProcess, use_settings):
        use_settings(idle_timeout=0.05, tick_interval=0.01)
        on_output = AsyncMock()

        with _patch_subprocess(fake_proc), patch(f"{_CR_CTRL}._graceful_stop", _fake_stop):
            result = await run_container_agent(
                TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None, on_output=on_output
            )

        assert result.status == "error"
        assert "timed out" in (result.error or "")
        assert "idle timeout" in (result.error or "")
        on_output.assert_not_awaited()

    async def test_records_keep_idle_timer_alive(self, fake_proc: FakeProcess, use_settings):
        use_settings(idle_timeout=0.3, tick_interval=0.01)
        on_output = AsyncMock()
        stop = AsyncMock()

        with _patch_subprocess(fake_proc), patch(f"{_CR_CTRL}._graceful_stop", stop):

            async def _driver():
                for i in range(4):
                    await asyncio.sleep(0.1)
                    fake_proc.emit_stdout(
                        _record({"status": "success", "result": str(i), "newSessionId": "s"})
                    )
                await asyncio.sleep(0.05)
                fake_proc.close(0)

            driver = asyncio.create_task(_driver())
            result = await run_container_agent(
                TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None, on_output=on_output
            )
            await driver

        stop.assert_not_awaited()
        assert on_output.await_count == 4
        assert result.status == "success"

    async def test_timeout_after_output_is_idle_cleanup(
        self, fake_proc: FakeProcess, use_settings
    ):
        use_settings(idle_timeout=0.05, tick_interval=0.01)

        with _patch_subprocess(fake_proc), patch(f"{_CR_CTRL}._graceful_stop", _fake_stop):
            fake_proc.emit_stdout(
                _record({"status": "success", "result": "response", "newSessionId": "s-99"})
            )
            result = await run_container_agent(
                TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None, on_output=AsyncMock()
            )

        assert result.status == "success"
        assert result.new_session_id == "s-99"

    async def test_legacy_mode_returns_last_result(self, fake_proc: FakeProcess):
        with _patch_subprocess(fake_proc):

            async def _driver():
                await asyncio.sleep(0.01)
                fake_proc.emit_stdout(
                    _record({"status": "success", "result": "one", "newSessionId": "s1"})
                    + _record({"status": "success", "result": "two", "newSessionId": "s2"})
                )
                await asyncio.sleep(0.01)
                fake_proc.close(0)

            driver = asyncio.create_task(_driver())
            result = await run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)
            await driver

        assert result == ContainerOutput(status="success", result="two", new_session_id="s2")

    async def test_noise_and_malformed_records_are_skipped(self, fake_proc: FakeProcess):
        on_output = AsyncMock()

        with _patch_subprocess(fake_proc):

            async def _driver():
                await asyncio.sleep(0.01)
                fake_proc.emit_stdout(b"npm WARN something\n---OUTPUT-START---\n{broken\n")
                fake_proc.emit_stdout(b"---OUTPUT-END---\n")
                fake_proc.emit_stdout(_record({"status": "success", "result": "ok"}))
                await asyncio.sleep(0.01)
                fake_proc.close(0)

            driver = asyncio.create_task(_driver())
            result = await run_container_agent(
                TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None, on_output=on_output
            )
            await driver

        on_output.assert_awaited_once_with(ContainerOutput(status="success", result="ok"))
        assert result.status == "success"

    async def test_callback_failure_does_not_stop_relay(self, fake_proc: FakeProcess):
        delivered: list[str | None] = []

        async def on_output(output: ContainerOutput) -> None:
            delivered.append(output.result)
            if output.result == "first":
                raise RuntimeError("downstream is down")

        with _patch_subprocess(fake_proc):

            async def _driver():
                await asyncio.sleep(0.01)
                fake_proc.emit_stdout(_record({"status": "success", "result": "first"}))
                await asyncio.sleep(0.01)
                fake_proc.emit_stdout(
                    _record({"status": "success", "result": "second", "newSessionId": "s"})
                )
                await asyncio.sleep(0.01)
                fake_proc.close(0)

            driver = asyncio.create_task(_driver())
            result = await run_container_agent(
                TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None, on_output=on_output
            )
            await driver

        assert delivered == ["first", "second"]
        assert result.new_session_id == "s"

    async def test_nonzero_exit_is_error(self, fake_proc: FakeProcess):
        with _patch_subprocess(fake_proc):

            async def _driver():
                await asyncio.sleep(0.01)
                fake_proc.emit_stderr(b"something went wrong\n")
                await asyncio.sleep(0.01)
                fake_proc.close(1)

            driver = asyncio.create_task(_driver())
            result = await run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)
            await driver

        assert result.status == "error"
        assert "code 1" in (result.error or "")
        assert "something went wrong" in (result.error or "")

    async def test_no_output_clean_exit_is_empty_success(self, fake_proc: FakeProcess):
        with _patch_subprocess(fake_proc):
            fake_proc.close(0)
            result = await run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)

        assert result == ContainerOutput(status="success", result=None)

    async def test_spawn_failure_is_resolved(self):
        async def _fail(*args: Any, **kwargs: Any) -> None:
            raise FileNotFoundError("docker: not found")

        with patch(f"{_CR_ORCH}.asyncio.create_subprocess_exec", _fail):
            result = await run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)

        assert result.status == "error"
        assert result.error == "Spawn failed: docker: not found"

    async def test_invalid_group_backend_raises_before_spawn(self):
        group = RegisteredGroup(
            jid="bad@g.us",
            name="Bad",
            folder="bad",
            container_config=GroupContainerConfig(sdk_backend="gpt"),
        )
        spawn = AsyncMock()
        with (
            patch(f"{_CR_ORCH}.asyncio.create_subprocess_exec", spawn),
            pytest.raises(ConfigurationError, match="Invalid group SDK backend: gpt"),
        ):
            await run_container_agent(group, TEST_INPUT, on_process=lambda p, n: None)
        spawn.assert_not_awaited()

    async def test_stale_mailbox_cleaned_before_spawn(self, fake_proc: FakeProcess, tmp_path: Path):
        input_dir = tmp_path / "data" / "ipc" / "test-group" / "input"
        input_dir.mkdir(parents=True)
        (input_dir / "_close").touch()
        (input_dir / "1.json").write_text('{"type": "message", "text": "old"}')

        with _patch_subprocess(fake_proc):
            fake_proc.close(0)
            await run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)

        assert list(input_dir.iterdir()) == []

    async def test_spawns_bounded_by_max_concurrent(self, use_settings):
        use_settings(container=ContainerConfig(max_concurrent=1))
        first, second = FakeProcess(), FakeProcess()
        calls: list[tuple] = []

        with _patch_subprocess(first, second, calls=calls):
            run_a = asyncio.create_task(
                run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)
            )
            run_b = asyncio.create_task(
                run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)
            )
            await asyncio.sleep(0.05)
            assert len(calls) == 1

            first.close(0)
            await asyncio.sleep(0.05)
            assert len(calls) == 2

            second.close(0)
            await asyncio.gather(run_a, run_b)

    async def test_wire_session_key_reaches_caller(self, fake_proc: FakeProcess):
        with _patch_subprocess(fake_proc):
            fake_proc.emit_stdout(
                b'---OUTPUT-START---\n{"status":"success","result":"ok","newSessionId":"s1"}\n'
                b"---OUTPUT-END---\n"
            )
            fake_proc.close(0)
            result = await run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)

        assert result == ContainerOutput(status="success", result="ok", new_session_id="s1")

    async def test_workspace_setup_failure_is_resolved(self, tmp_path: Path):
        (tmp_path / "groups").mkdir()
        (tmp_path / "groups" / "test-group").write_text("not a directory")
        spawn = AsyncMock()

        with patch(f"{_CR_ORCH}.asyncio.create_subprocess_exec", spawn):
            result = await run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)

        assert result.status == "error"
        assert (result.error or "").startswith("Workspace setup failed: ")
        spawn.assert_not_awaited()

    async def test_unusable_logs_dir_does_not_fail_run(
        self, fake_proc: FakeProcess, tmp_path: Path
    ):
        group_dir = tmp_path / "groups" / "test-group"
        group_dir.mkdir(parents=True)
        (group_dir / "logs").write_text("a file where the logs dir should be")

        with _patch_subprocess(fake_proc):
            fake_proc.emit_stdout(
                _record({"status": "success", "result": "fine", "newSessionId": "s1"})
            )
            fake_proc.close(0)
            result = await run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)

        assert result == ContainerOutput(status="success", result="fine", new_session_id="s1")
        assert (group_dir / "logs").is_file()

    async def test_run_log_write_failure_does_not_fail_run(self, fake_proc: FakeProcess):
        with (
            _patch_subprocess(fake_proc),
            patch(f"{_CR_ORCH}._write_run_log", side_effect=PermissionError("read-only")),
        ):
            fake_proc.emit_stdout(_record({"status": "success", "result": "fine"}))
            fake_proc.close(0)
            result = await run_container_agent(TEST_GROUP, TEST_INPUT, on_process=lambda p, n: None)

        assert result == ContainerOutput(status="success", result="fine")

    async def test_process_callback_failure_does_not_fail_run(self, fake_proc: FakeProcess):
        def on_process(proc: Any, name: str) -> None:
            raise RuntimeError("registry is full")

        with _patch_subprocess(fake_proc):
            fake_proc.emit_stdout(_record({"status": "success", "result": "fine"}))
            fake_proc.close(0)
            result = await run_container_agent(TEST_GROUP, TEST_INPUT, on_process=on_process)

        assert result == ContainerOutput(status="success", result="fine")
        assert json.loads(fake_proc.stdin.data) == _input_to_dict(TEST_INPUT)
