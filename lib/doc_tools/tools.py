import logging
import subprocess
import threading
import time

from dataclasses import dataclass
from typing import IO, Optional, Sequence

from type_defs.errors import ToolExecutionError
from type_defs.shared import ToolErrorKind

logger = logging.getLogger(__name__)

default_max_buffer = 1024 * 1024

read_chunk_size = 64 * 1024


@dataclass(frozen=True)
class ToolOutput:
    stdout: bytes
    stderr: bytes
    duration: float


class OutputCapture:
    """
    Collects stdout and stderr of a running process and kills it as soon as
    both together pass `max_buffer` bytes.
    """

    def __init__(self, process: subprocess.Popen, max_buffer: int):
        self.process = process
        self.max_buffer = max_buffer
        self.size = 0
        self.exceeded = False
        self.chunks: dict[str, list[bytes]] = {"stdout": [], "stderr": []}
        self._lock = threading.Lock()

    def read(self, name: str, stream: IO[bytes]):
        with stream:
            while True:
                chunk = stream.read1(read_chunk_size)  # type: ignore
                if not chunk:
                    return

                with self._lock:
                    self.size += len(chunk)
                    if self.size > self.max_buffer:
                        self.exceeded = True

                    exceeded = self.exceeded

                if exceeded:
                    self.process.kill()
                    return

                self.chunks[name].append(chunk)

    def output(self, name: str) -> bytes:
        return b"".join(self.chunks[name])


class ToolRunner:
    """
    Runs external tools as blocking, timeout-bounded subprocesses.

    Blocking is fine: callers run on worker threads, and the job lock is
    renewed from a separate thread while a tool is running.
    """

    def run(
        self,
        command: str,
        args: Sequence[str],
        timeout: Optional[float] = None,
        max_buffer: int = default_max_buffer,
        ok_codes: Sequence[int] = (0,),
    ) -> ToolOutput:
        """
        command -> executable name or path.
        timeout -> seconds, None waits forever.
        max_buffer -> max bytes of captured stdout + stderr, the tool is killed past it.
        ok_codes -> exit codes treated as success.

        raises ToolExecutionError(kind=nonzero|timeout).
        """

        argv = [command, *args]
        t0 = time.monotonic()

        try:
            process = subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError as e:
            raise ToolExecutionError(
                ToolErrorKind.NonZero.value, command, "command not found"
            ) from e

        capture = OutputCapture(process, max_buffer)
        readers = [
            threading.Thread(target=capture.read, args=("stdout", process.stdout), daemon=True),
            threading.Thread(target=capture.read, args=("stderr", process.stderr), daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            returncode = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            process.kill()
            process.wait()
            for reader in readers:
                reader.join()

            raise ToolExecutionError(
                ToolErrorKind.Timeout.value,
                command,
                f"killed after {timeout}s",
            ) from e

        for reader in readers:
            reader.join()

        duration = time.monotonic() - t0

        if capture.exceeded:
            raise ToolExecutionError(
                ToolErrorKind.NonZero.value,
                command,
                f"maxBuffer exceeded (> {max_buffer} bytes)",
            )

        stdout = capture.output("stdout")
        stderr = capture.output("stderr")

        if returncode not in ok_codes:
            detail = stderr.decode("utf-8", errors="replace").strip()[:320]
            raise ToolExecutionError(
                ToolErrorKind.NonZero.value,
                command,
                f"exit={returncode}: {detail}",
            )

        logger.debug("%s finished in %.2fs", command, duration)

        return ToolOutput(stdout=stdout, stderr=stderr, duration=duration)
