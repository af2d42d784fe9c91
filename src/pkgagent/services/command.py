"""Command driver: run host executables with timeout and output capture."""

import asyncio
import logging
import os
import shlex
import signal
from contextlib import suppress
from typing import Optional

from pkgagent.models.command import HOST_FAULT_STATUS, CommandInvocation, CommandResult
from pkgagent.models.config import AgentConfig

# Upper bound for reaping output after SIGKILL. Only exceeded when a child
# escaped its process group and still holds the pipe open.
KILL_REAP_SECONDS = 0.5


class CommandDriver:
    """Runs external programs without ever raising host-level faults.

    stdout and stderr are merged into a single pipe that is drained
    concurrently with stdin delivery; the exit status is collected only after
    the pipe reaches EOF. Each child runs in its own session so timeouts and
    cancellation signal the whole process group.
    """

    def __init__(self, config: Optional[AgentConfig] = None):
        """Initialize command driver.

        Args:
            config: Agent configuration (defaults if None)
        """
        self.logger = logging.getLogger("pkgagent.command")
        self.config = config or AgentConfig()
        self.grace_seconds = self.config.command_grace_seconds
        self.chunk_size = self.config.chunk_size

    async def run(self, invocation: CommandInvocation) -> CommandResult:
        """Run a command to completion.

        Returns:
            CommandResult; status -1 when the program could not be spawned,
            hit an internal fault, or was killed after its timeout.

        Raises:
            asyncio.CancelledError: After terminating the child, if the
                calling task was cancelled.
        """
        if not invocation.launch_path:
            self.logger.error("Refusing to run command with empty launch path")
            return CommandResult.host_fault("launch path is empty")

        command_line = " ".join(shlex.quote(a) for a in invocation.argv)
        self.logger.info(f"CMD {command_line}")

        try:
            result = await self._run(invocation)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Command {invocation.launch_path} faulted: {e}", exc_info=True)
            return CommandResult.host_fault(f"{invocation.launch_path}: internal fault: {e}")

        self.logger.debug(
            f"Command {invocation.launch_path} exited: status={result.status}, "
            f"timed_out={result.timed_out}, output={result.output.strip()!r}"
        )
        return result

    async def _run(self, invocation: CommandInvocation) -> CommandResult:
        payload = invocation.standard_input
        try:
            process = await asyncio.create_subprocess_exec(
                *invocation.argv,
                stdin=asyncio.subprocess.PIPE if payload else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=invocation.environment,
                start_new_session=True,
            )
        except OSError as e:
            self.logger.error(f"Failed to launch {invocation.launch_path}: {e}")
            return CommandResult.host_fault(
                f"failed to launch {invocation.launch_path}: {e.strerror or e}"
            )

        chunks: list[bytes] = []

        async def drain() -> None:
            while chunk := await process.stdout.read(self.chunk_size):
                chunks.append(chunk)

        async def feed() -> None:
            if not payload:
                return
            try:
                process.stdin.write(payload)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                self.logger.debug(f"{invocation.launch_path} closed stdin early")
            finally:
                process.stdin.close()

        async def communicate() -> int:
            await asyncio.gather(drain(), feed())
            return await process.wait()

        task = asyncio.create_task(communicate())
        timeout = invocation.timeout or None
        try:
            status = await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                f"{invocation.launch_path} exceeded {invocation.timeout}s, terminating"
            )
            await self._terminate(process, task)
            output = self._decode(chunks)
            if output and not output.endswith("\n"):
                output += "\n"
            output += f"{invocation.launch_path}: timed out after {invocation.timeout:g} seconds\n"
            return CommandResult(status=HOST_FAULT_STATUS, output=output, timed_out=True)
        except asyncio.CancelledError:
            self.logger.warning(f"Cancelled while running {invocation.launch_path}, terminating")
            await self._terminate(process, task)
            raise
        except Exception:
            await self._terminate(process, task)
            raise

        return CommandResult(status=status, output=self._decode(chunks))

    async def _terminate(self, process: asyncio.subprocess.Process, task: asyncio.Task) -> None:
        """SIGTERM the process group, wait the grace period, then SIGKILL."""
        if task.done():
            return
        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(task), self.grace_seconds)
            return
        except asyncio.TimeoutError:
            pass
        except Exception as e:
            self.logger.debug(f"Output reader for process {process.pid} failed: {e}")
            return

        self.logger.warning(f"Process {process.pid} ignored SIGTERM, sending SIGKILL")
        self._signal_group(process, signal.SIGKILL)
        try:
            await asyncio.wait_for(task, KILL_REAP_SECONDS)
        except asyncio.TimeoutError:
            self.logger.warning(f"Output of process {process.pid} still open after SIGKILL")
        except Exception as e:
            self.logger.debug(f"Output reader for process {process.pid} failed: {e}")

    def _signal_group(self, process: asyncio.subprocess.Process, sig: int) -> None:
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, sig)

    @staticmethod
    def _decode(chunks: list[bytes]) -> str:
        return b"".join(chunks).decode("utf-8", errors="replace")
