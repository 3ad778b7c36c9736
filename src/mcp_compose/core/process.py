"""
Host-process workloads.

Servers declared with a ``command`` but no image or build context run as
detached local processes. Each gets a pid file and a log file named after
its canonical name so status, logs and stop work across CLI invocations.
"""

import asyncio
import os
import shlex
import signal
from pathlib import Path
from typing import Dict, List, Optional

from mcp_compose.core.exceptions import EngineError
from mcp_compose.core.models import WorkloadStatus
from mcp_compose.core.runtime.base import ProcessHandle, tail_lines
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_STATE_DIR = Path("~/.mcp-compose").expanduser()
STOP_GRACE_SECONDS = 10


class ProcessSupervisor:
    """Starts, inspects and stops host-process servers."""

    def __init__(self, state_dir: Optional[Path] = None):
        self.state_dir = Path(state_dir) if state_dir else DEFAULT_STATE_DIR
        self.run_dir = self.state_dir / "run"
        self.log_dir = self.state_dir / "logs"

    def pid_file(self, name: str) -> Path:
        return self.run_dir / f"{name}.pid"

    def log_file(self, name: str) -> Path:
        return self.log_dir / f"{name}.log"

    def read_pid(self, name: str) -> Optional[int]:
        try:
            return int(self.pid_file(name).read_text().strip())
        except (OSError, ValueError):
            return None

    @staticmethod
    def _alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def status(self, name: str) -> WorkloadStatus:
        pid = self.read_pid(name)
        if pid is None or not self._alive(pid):
            return WorkloadStatus.STOPPED
        return WorkloadStatus.RUNNING

    async def start(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        workdir: Optional[str] = None,
    ) -> int:
        """
        Launch ``command args`` detached from this process.

        Returns:
            The child's pid

        Raises:
            EngineError: ``start-failed`` when the command cannot be launched
        """
        if self.status(name) == WorkloadStatus.RUNNING:
            pid = self.read_pid(name)
            logger.info(f"Process '{name}' already running (pid {pid})")
            return pid

        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        argv = shlex.split(command) + list(args or [])
        environment = dict(os.environ)
        environment.update(env or {})

        log = open(self.log_file(name), "ab")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log,
                stderr=asyncio.subprocess.STDOUT,
                env=environment,
                cwd=workdir,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise EngineError("start-failed", f"Failed to start process '{name}': {e}")
        finally:
            log.close()

        self.pid_file(name).write_text(str(process.pid))
        logger.info(f"Process '{name}' started (pid {process.pid})", extra={"server": name})
        return process.pid

    async def stop(self, name: str) -> None:
        """Terminate the process group; idempotent."""
        pid = self.read_pid(name)
        if pid is None or not self._alive(pid):
            self.pid_file(name).unlink(missing_ok=True)
            return

        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass

        for _ in range(STOP_GRACE_SECONDS * 10):
            if not self._alive(pid):
                break
            await asyncio.sleep(0.1)
        else:
            logger.warning(f"Process '{name}' did not exit, killing it")
            try:
                os.killpg(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

        self.pid_file(name).unlink(missing_ok=True)
        logger.info(f"Process '{name}' stopped", extra={"server": name})

    def read_logs(self, name: str, tail: Optional[int] = None) -> str:
        try:
            text = self.log_file(name).read_text(errors="replace")
        except FileNotFoundError:
            raise EngineError("not-found", f"No logs for process '{name}'")
        return tail_lines(text, tail) if tail else text

    async def follow_logs(self, name: str, tail: int = 50) -> ProcessHandle:
        path = self.log_file(name)
        if not path.exists():
            raise EngineError("not-found", f"No logs for process '{name}'")
        process = await asyncio.create_subprocess_exec(
            "tail", "-n", str(tail), "-F", str(path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        return ProcessHandle(process, f"tail {path}")
