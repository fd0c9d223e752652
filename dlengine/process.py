"""Spawns external tools and streams their output line by line."""
import asyncio
import codecs
import logging
import os
import sys
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .constants import SUBPROCESS_CREATION_FLAGS, STREAM_READ_CHUNK_SIZE
from .failures import classify_stderr_line
from .output_parser import DownloadUpdate
from .tools import ToolResolution

STDOUT = 'stdout'
STDERR = 'stderr'

LineHandler = Callable[[str, str], Optional[DownloadUpdate]]


@dataclass
class ProcessResult:
    """
    The outcome of one supervised run.

    Attributes:
        exit_code: The process exit code; 1 if the process could not be spawned.
        last_known_output_path: The last output path reported by the line handler.
        format_unavailable: A stderr line said the requested format is not available.
        downloader_error: A non-warning stderr line blamed the (external) downloader.
        decode_warning: Some output was not valid UTF-8 and was decoded with replacements.
    """
    exit_code: int
    last_known_output_path: Optional[str] = None
    format_unavailable: bool = False
    downloader_error: bool = False
    decode_warning: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass
class CommandOutput:
    """Collected output of a short, non-streamed command."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class LineBuffer:
    """Reassembles text chunks into complete lines, independently per stream."""

    def __init__(self):
        self._pending = ""

    def feed(self, text: str) -> List[str]:
        """Adds a chunk and returns every line it completed."""
        self._pending += text
        *lines, self._pending = self._pending.split('\n')
        return lines

    def flush(self) -> Optional[str]:
        """Returns the unterminated remainder, if any."""
        remainder, self._pending = self._pending, ""
        return remainder or None


def _spawn_kwargs() -> Dict[str, int]:
    kwargs = {}
    if sys.platform == 'win32':
        kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS
    return kwargs


def _merged_env(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if not env:
        return None
    return {**os.environ, **env}


class ProcessSupervisor:
    """
    Runs one external process at a time per call and reports how it ended.

    Output from stdout and stderr is read in chunks as it arrives, split into
    lines, and handed to a line handler in arrival order. Failure signals are
    collected from stderr while the process runs.
    """

    def __init__(self, log_prefix: str = ""):
        """
        Initializes the ProcessSupervisor.

        Args:
            log_prefix: Prepended to every log message, usually "[<job_id>] ".
        """
        self.log_prefix = log_prefix
        self.logger = logging.getLogger(__name__)

    async def run(self, tool: ToolResolution, args: List[str], env: Optional[Dict[str, str]], on_line: LineHandler) -> ProcessResult:
        """
        Spawns the tool and supervises it until exit.

        Args:
            tool: The resolved executable.
            args: The argument vector (without the executable).
            env: Variables merged over the current environment.
            on_line: Called with (stream, line) for every line, including the
                final unterminated one. Its returned update, if it carries an
                output path, becomes the result's last known output path.

        Returns:
            A ProcessResult. Never raises for process-level failures.
        """
        result = ProcessResult(exit_code=1)
        try:
            process = await asyncio.create_subprocess_exec(
                tool.command, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_merged_env(env),
                **_spawn_kwargs()
            )
        except (FileNotFoundError, PermissionError) as e:
            self.logger.error(f"{self.log_prefix}Failed to spawn {tool.path}: {e}")
            return result
        except OSError as e:
            self.logger.error(f"{self.log_prefix}OS error spawning {tool.path}: {e}")
            return result

        events: asyncio.Queue[Optional[Tuple[str, str]]] = asyncio.Queue()
        readers = [
            asyncio.create_task(self._read_stream(process.stdout, STDOUT, events, result)),
            asyncio.create_task(self._read_stream(process.stderr, STDERR, events, result)),
        ]

        open_streams = len(readers)
        while open_streams:
            event = await events.get()
            if event is None:
                open_streams -= 1
                continue
            stream, line = event
            self._handle_line(stream, line, on_line, result)

        await asyncio.gather(*readers)
        result.exit_code = await process.wait()
        self.logger.info(f"{self.log_prefix}Process finished with code {result.exit_code}")
        return result

    def _handle_line(self, stream: str, line: str, on_line: LineHandler, result: ProcessResult):
        if stream == STDERR:
            signal = classify_stderr_line(line)
            if signal.format_unavailable:
                result.format_unavailable = True
            if signal.downloader_error:
                result.downloader_error = True

        try:
            update = on_line(stream, line)
        except Exception:
            self.logger.exception(f"{self.log_prefix}Line handler failed on: {line}")
            return
        if update is not None and update.output_path:
            result.last_known_output_path = update.output_path

    async def _read_stream(self, stream: Optional[asyncio.StreamReader], name: str,
                           events: "asyncio.Queue[Optional[Tuple[str, str]]]", result: ProcessResult):
        """Reads one stream to EOF, pushing completed lines and a final None."""
        buffer = LineBuffer()
        decoder = codecs.getincrementaldecoder('utf-8')('strict')
        try:
            if stream is None:
                return
            while True:
                chunk = await stream.read(STREAM_READ_CHUNK_SIZE)
                final = not chunk
                try:
                    text = decoder.decode(chunk, final=final)
                except UnicodeDecodeError as e:
                    self.logger.warning(f"{self.log_prefix}Process output decode warning on {name}: {e}")
                    result.decode_warning = True
                    # Bytes held back from the previous chunk still belong to this text.
                    pending, _ = decoder.getstate()
                    decoder = codecs.getincrementaldecoder('utf-8')('replace')
                    text = decoder.decode(pending + chunk, final=final)
                for line in buffer.feed(text):
                    events.put_nowait((name, line))
                if final:
                    break
            remainder = buffer.flush()
            if remainder is not None:
                events.put_nowait((name, remainder))
        finally:
            events.put_nowait(None)

    async def execute(self, tool: ToolResolution, args: List[str], env: Optional[Dict[str, str]] = None,
                      timeout: Optional[float] = None) -> CommandOutput:
        """
        Runs a short command to completion and collects its output.

        Args:
            tool: The resolved executable.
            args: The argument vector (without the executable).
            env: Variables merged over the current environment.
            timeout: Optional limit in seconds; the process is killed when exceeded.

        Returns:
            A CommandOutput; exit code 1 if the process could not be spawned or timed out.
        """
        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                tool.command, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_merged_env(env),
                **_spawn_kwargs()
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except (FileNotFoundError, PermissionError) as e:
            self.logger.error(f"{self.log_prefix}Failed to spawn {tool.path}: {e}")
            return CommandOutput(exit_code=1, stderr=str(e))
        except asyncio.TimeoutError:
            if process:
                try:
                    process.kill()
                except (ProcessLookupError, OSError):
                    pass  # Already gone
                await process.wait()
            self.logger.error(f"{self.log_prefix}Command timed out: {tool.path} {' '.join(args)}")
            return CommandOutput(exit_code=1, stderr="Command timed out")
        except OSError as e:
            self.logger.error(f"{self.log_prefix}OS error running {tool.path}: {e}")
            return CommandOutput(exit_code=1, stderr=str(e))

        return CommandOutput(
            exit_code=process.returncode if process.returncode is not None else 1,
            stdout=stdout_bytes.decode('utf-8', 'replace'),
            stderr=stderr_bytes.decode('utf-8', 'replace'),
        )
