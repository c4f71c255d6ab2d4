import asyncio
import logging
from dataclasses import dataclass

from app.core.errors import Timeout

logger = logging.getLogger(__name__)

@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str

    def stderr_tail(self, limit: int = 2000) -> str:
        return self.stderr[-limit:]

async def run_process(argv: list[str], *, timeout: float, cwd: str | None = None) -> ProcessResult:
    """
    Run ``argv`` to completion and capture its output.

    Raises FileNotFoundError/PermissionError when the executable cannot be
    started (callers map these to their own error type) and ``Timeout`` when
    the process outlives ``timeout`` seconds. A timed-out process is killed and
    reaped before the error propagates; so is one whose caller is cancelled.
    """
    logger.debug("Spawning %s", " ".join(argv))
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("Killed %s after %.1fs timeout (pid=%s)", argv[0], timeout, proc.pid)
        raise Timeout(f"{argv[0]} timed out after {timeout:g}s")
    except asyncio.CancelledError:
        # the run is being torn down; do not leave the child behind
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        logger.warning("Killed %s on cancellation (pid=%s)", argv[0], proc.pid)
        raise
    result = ProcessResult(
        returncode=proc.returncode,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
    )
    logger.debug("%s exited with code %s", argv[0], result.returncode)
    return result
