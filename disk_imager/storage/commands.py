"""External command execution with typed results.

Every tool the imager relies on (lsblk, sfdisk, partclone, dd, gzip, ...) is
invoked through ``CommandRunner``. The runner never raises for a non-zero
exit; it returns a ``CommandResult`` and callers decide whether the failure
is fatal, recoverable, or expected. Output is captured in full before the next
step runs; bulk image data is streamed between processes and files and never
held in memory.
"""

from __future__ import annotations

import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Optional, Sequence

from disk_imager.logging import LoggerFactory

from .exceptions import CommandFailedError


log = LoggerFactory.for_commands()

COMMAND_NOT_EXECUTABLE = 126
COMMAND_NOT_FOUND = 127
COMMAND_TIMED_OUT = 124


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a command or pipeline."""

    command_line: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error_summary(self) -> str:
        stderr = self.stderr.strip()
        stdout = self.stdout.strip()
        message = stderr or stdout or f"exit status {self.returncode}"
        return message.splitlines()[-1]

    def describe(self) -> str:
        """Multi-line failure description for logs."""
        lines = [f"command: {self.command_line}", f"exit status: {self.returncode}"]
        if self.stderr.strip():
            lines.append(f"stderr: {self.stderr.strip()}")
        if self.stdout.strip():
            lines.append(f"stdout: {self.stdout.strip()[:2000]}")
        return "\n".join(lines)

    def check(self, context: str = "") -> CommandResult:
        """Raise CommandFailedError unless the command succeeded."""
        if not self.ok:
            raise CommandFailedError(self, context)
        return self


def format_command(command: Sequence[str]) -> str:
    return " ".join(str(part) for part in command)


def format_pipeline(
    commands: Sequence[Sequence[str]], output_path: Optional[Path] = None
) -> str:
    line = " | ".join(format_command(command) for command in commands)
    if output_path is not None:
        line += f" > {output_path}"
    return line


class CommandRunner:
    """Runs external commands synchronously and reports typed results."""

    def which(self, tool: str) -> Optional[str]:
        """Return the executable path for a tool, or None if not installed."""
        return shutil.which(tool)

    def has(self, tool: str) -> bool:
        return self.which(tool) is not None

    def run(
        self,
        command: Sequence[str],
        *,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command and capture its output."""
        command_line = format_command(command)
        log.debug(f"Running command: {command_line}")
        try:
            completed = subprocess.run(
                [str(part) for part in command],
                input=input_text,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except FileNotFoundError as error:
            result = CommandResult(command_line, COMMAND_NOT_FOUND, "", str(error))
        except OSError as error:
            result = CommandResult(command_line, COMMAND_NOT_EXECUTABLE, "", str(error))
        except subprocess.TimeoutExpired:
            result = CommandResult(
                command_line, COMMAND_TIMED_OUT, "", f"timed out after {timeout} seconds"
            )
        else:
            result = CommandResult(
                command_line,
                completed.returncode,
                completed.stdout or "",
                completed.stderr or "",
            )
        self._log_result(result)
        return result

    def run_checked(
        self,
        command: Sequence[str],
        *,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
        context: str = "",
    ) -> str:
        """Run a command and raise CommandFailedError if it fails."""
        return self.run(command, input_text=input_text, timeout=timeout).check(context).stdout

    def run_pipeline(
        self,
        commands: Sequence[Sequence[str]],
        *,
        output_path: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``cmd1 | cmd2 | ...`` optionally redirecting the last stage to a file.

        The result reports the first stage that failed (pipefail semantics).
        stderr of every stage goes to a temporary file so a chatty stage can
        never block the pipe.
        """
        if not commands:
            raise ValueError("pipeline needs at least one command")
        command_line = format_pipeline(commands, output_path)
        log.debug(f"Running pipeline: {command_line}")

        processes: list[subprocess.Popen] = []
        stderr_files: list[IO[bytes]] = []
        output_handle: Optional[IO[bytes]] = None
        stdout_data = b""
        result: Optional[CommandResult] = None
        try:
            if output_path is not None:
                output_handle = open(output_path, "wb")
            upstream = subprocess.DEVNULL
            for index, command in enumerate(commands):
                is_last = index == len(commands) - 1
                stderr_file = tempfile.TemporaryFile()
                stderr_files.append(stderr_file)
                if is_last and output_handle is not None:
                    stdout_target = output_handle
                else:
                    stdout_target = subprocess.PIPE
                process = subprocess.Popen(
                    [str(part) for part in command],
                    stdin=upstream,
                    stdout=stdout_target,
                    stderr=stderr_file,
                )
                if processes and processes[-1].stdout:
                    # Only the child holds the read end now, so it sees EOF/SIGPIPE.
                    processes[-1].stdout.close()
                processes.append(process)
                upstream = process.stdout
            stdout_data, _ = processes[-1].communicate(timeout=timeout)
            for process in processes[:-1]:
                process.wait(timeout=timeout)
        except FileNotFoundError as error:
            result = CommandResult(command_line, COMMAND_NOT_FOUND, "", str(error))
        except OSError as error:
            result = CommandResult(command_line, COMMAND_NOT_EXECUTABLE, "", str(error))
        except subprocess.TimeoutExpired:
            result = CommandResult(
                command_line, COMMAND_TIMED_OUT, "", f"timed out after {timeout} seconds"
            )
        finally:
            for process in processes:
                if process.poll() is None:
                    process.kill()
                    process.wait()
            if output_handle is not None:
                output_handle.close()

        if result is None:
            result = self._pipeline_result(
                command_line, processes, stderr_files, stdout_data or b""
            )
        for stderr_file in stderr_files:
            stderr_file.close()
        self._log_result(result)
        return result

    @staticmethod
    def _pipeline_result(
        command_line: str,
        processes: list[subprocess.Popen],
        stderr_files: list[IO[bytes]],
        stdout_data: bytes,
    ) -> CommandResult:
        stdout_text = stdout_data.decode("utf-8", errors="replace")
        for process, stderr_file in zip(processes, stderr_files):
            if process.returncode != 0:
                stderr_file.seek(0)
                stderr_text = stderr_file.read().decode("utf-8", errors="replace")
                stage = format_command(process.args)
                return CommandResult(
                    command_line,
                    process.returncode,
                    stdout_text,
                    f"{stage}: {stderr_text.strip() or 'failed'}",
                )
        return CommandResult(command_line, 0, stdout_text, "")

    @staticmethod
    def _log_result(result: CommandResult) -> None:
        if result.ok:
            log.trace(f"Command completed: {result.command_line}")
            if result.stdout.strip():
                log.trace(f"stdout: {result.stdout.strip()[:2000]}")
            return
        log.debug(
            f"Command exited with {result.returncode}: {result.command_line}: "
            f"{result.error_summary}"
        )
