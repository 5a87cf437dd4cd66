"""OS control capabilities: suspend and systemd service management.

Every call shells out through asyncio subprocesses with a bounded wait and
reports a CommandResult instead of raising, so callers decide what a
failure means.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from .logs import logger

DEFAULT_COMMAND_TIMEOUT = 20.0


@dataclass
class CommandResult:
    success: bool
    returncode: Optional[int] = None
    output: str = ""

    @property
    def message(self) -> str:
        if self.output:
            return self.output
        if self.returncode is None:
            return "no exit status"
        return f"exit code {self.returncode}"


class SystemControl:
    """systemctl/pkill backed implementation of the OS capabilities."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout

    async def run(self, *cmd: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a command, killing it if it outlives the timeout."""
        timeout = timeout or self.timeout
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return CommandResult(False, None, f"Failed to execute {cmd[0]}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            return CommandResult(False, None, f"{' '.join(cmd)} timed out after {timeout:g}s")
        except asyncio.CancelledError:
            # A caller's own timeout; the command must not outlive it
            await self._kill(proc)
            raise

        output = (stderr.decode(errors="replace").strip()
                  or stdout.decode(errors="replace").strip())
        return CommandResult(proc.returncode == 0, proc.returncode, output)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass  # Exited between timeout and kill
        await proc.wait()
        logger.warning(f"Killed command pid {proc.pid} (exit code: {proc.returncode})")

    async def _systemctl(self, *args: str) -> CommandResult:
        result = await self.run("systemctl", *args)
        if result.success:
            logger.info(f"systemctl {' '.join(args)} succeeded")
        else:
            logger.warning(f"systemctl {' '.join(args)} failed: {result.message}")
        return result

    # ---- Capabilities ----

    async def check_available(self) -> CommandResult:
        result = await self.run("systemctl", "--version")
        if not result.success:
            result.output = "systemctl is not available. This server requires systemd."
        return result

    async def request_suspend_now(self) -> CommandResult:
        logger.info("Executing system suspension")
        return await self._systemctl("suspend")

    async def start_service(self, unit: str) -> CommandResult:
        return await self._systemctl("start", unit)

    async def stop_service(self, unit: str) -> CommandResult:
        return await self._systemctl("stop", unit)

    async def restart_service(self, unit: str) -> CommandResult:
        return await self._systemctl("restart", unit)

    async def reload_service_manager(self) -> CommandResult:
        return await self._systemctl("daemon-reload")

    async def force_kill_service(self, process_name: str) -> CommandResult:
        result = await self.run("pkill", "-f", process_name)
        # pkill exits 1 when nothing matched, which is fine here
        if result.returncode == 1:
            result.success = True
        logger.info(f"Force kill {process_name} completed (exit code: {result.returncode})")
        return result

    async def is_service_active(self, unit: str) -> CommandResult:
        """success=True means active; is-active exits non-zero when inactive."""
        result = await self.run("systemctl", "is-active", unit)
        logger.debug(f"{unit} is {'active' if result.success else 'inactive'}")
        return result
