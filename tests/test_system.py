"""SystemControl tests. Real subprocesses run the current interpreter."""

import asyncio
import os
import sys

import pytest

from order_coffee.system import CommandResult, SystemControl


@pytest.fixture
def system():
    return SystemControl(timeout=5)


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def test_message_prefers_output():
    assert CommandResult(False, 1, "unit not found").message == "unit not found"
    assert CommandResult(False, 4).message == "exit code 4"
    assert CommandResult(False).message == "no exit status"


@pytest.mark.asyncio
class TestRun:
    async def test_success(self, system):
        result = await system.run(sys.executable, "-c", "print('hello')")
        assert result.success
        assert result.returncode == 0
        assert result.output == "hello"

    async def test_failure_reports_stderr(self, system):
        result = await system.run(
            sys.executable, "-c", "import sys; print('out'); sys.stderr.write('bad unit'); sys.exit(5)",
        )
        assert not result.success
        assert result.returncode == 5
        assert result.output == "bad unit"

    async def test_timeout_kills_process(self, system):
        result = await system.run(sys.executable, "-c", "import time; time.sleep(30)", timeout=0.2)
        assert not result.success
        assert result.returncode is None
        assert "timed out" in result.output

    async def test_outer_timeout_kills_process(self, system, tmp_path):
        pid_file = tmp_path / "pid"
        script = "import os, sys, time; open(sys.argv[1], 'w').write(str(os.getpid())); time.sleep(30)"

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(system.run(sys.executable, "-c", script, str(pid_file)), timeout=1.0)

        assert not process_alive(int(pid_file.read_text()))

    async def test_missing_binary(self, system):
        result = await system.run("definitely-not-a-real-binary-xyz")
        assert not result.success
        assert result.returncode is None
        assert "Failed to execute" in result.output


@pytest.mark.asyncio
class TestCapabilities:
    @pytest.fixture
    def recorded(self, system, monkeypatch):
        calls = []

        def fake_run(returncode=0, output=""):
            async def run(*cmd, timeout=None):
                calls.append(cmd)
                return CommandResult(returncode == 0, returncode, output)
            return run

        monkeypatch.setattr(system, "run", fake_run())
        return calls, fake_run

    async def test_systemctl_commands(self, system, recorded):
        calls, _ = recorded
        await system.request_suspend_now()
        await system.start_service("ollama.service")
        await system.stop_service("ollama.service")
        await system.restart_service("ollama.service")
        await system.reload_service_manager()
        await system.is_service_active("ollama.service")
        assert calls == [
            ("systemctl", "suspend"),
            ("systemctl", "start", "ollama.service"),
            ("systemctl", "stop", "ollama.service"),
            ("systemctl", "restart", "ollama.service"),
            ("systemctl", "daemon-reload"),
            ("systemctl", "is-active", "ollama.service"),
        ]

    async def test_pkill_no_match_is_success(self, system, recorded, monkeypatch):
        _, fake_run = recorded
        monkeypatch.setattr(system, "run", fake_run(returncode=1))
        result = await system.force_kill_service("ollama")
        assert result.success
        assert result.returncode == 1

    async def test_pkill_error_is_failure(self, system, recorded, monkeypatch):
        _, fake_run = recorded
        monkeypatch.setattr(system, "run", fake_run(returncode=2, output="bad pattern"))
        result = await system.force_kill_service("ollama")
        assert not result.success

    async def test_check_available_message(self, system, recorded, monkeypatch):
        _, fake_run = recorded
        monkeypatch.setattr(system, "run", fake_run(returncode=127))
        result = await system.check_available()
        assert not result.success
        assert "requires systemd" in result.message
