from __future__ import annotations

import asyncio
import os
import shutil
import signal
from typing import TYPE_CHECKING, AsyncIterator, Callable, Dict, List, Optional, Sequence

import structlog

from hub_errors import AgentSpawnError

if TYPE_CHECKING:
    from agent_sessions import Session

logger = structlog.get_logger()


def probe_agent_cli(binary: str = "agent") -> Optional[str]:
    """Resolve the agent binary on PATH; ``None`` disables dispatch."""
    resolved = shutil.which(binary)
    if resolved:
        logger.info("agent_cli_found", path=resolved)
    else:
        logger.warning("agent_cli_missing", binary=binary)
    return resolved


class AgentProcess:
    """Run one agent invocation and expose its output as an async event stream.

    Events are dicts: ``{"kind": "stdout"|"stderr", "data": bytes}`` for output
    chunks and a single ``{"kind": "exit", "code": int}`` once the process has
    been reaped. Output still buffered at exit gets ``drain_seconds`` to arrive;
    pipes held open by background children do not delay the exit event.

    The agent leads its own process group so signals reach its children too.
    """

    def __init__(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        read_size: int = 1 << 16,
        drain_seconds: float = 1.0,
    ) -> None:
        self.argv = list(argv)
        self.cwd = cwd or os.getcwd()
        self.env = env
        self.read_size = read_size
        self.drain_seconds = drain_seconds
        self.proc: Optional[asyncio.subprocess.Process] = None
        self._events: asyncio.Queue[Optional[dict]] = asyncio.Queue()
        self._pump_tasks: list[asyncio.Task] = []
        self._watch_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode if self.proc else None

    async def start(self) -> None:
        env = dict(os.environ)
        if self.env:
            env.update(self.env)
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=self.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise AgentSpawnError(f"failed to start {self.argv[0]!r}: {exc}") from exc
        assert self.proc.stdout and self.proc.stderr
        self._pump_tasks = [
            asyncio.create_task(self._pump(self.proc.stdout, "stdout"), name=f"agent-{self.pid}-stdout"),
            asyncio.create_task(self._pump(self.proc.stderr, "stderr"), name=f"agent-{self.pid}-stderr"),
        ]
        self._watch_task = asyncio.create_task(self._watch(), name=f"agent-{self.pid}-exit")

    async def _pump(self, stream: asyncio.StreamReader, kind: str) -> None:
        try:
            while True:
                chunk = await stream.read(self.read_size)
                if not chunk:
                    break
                await self._events.put({"kind": kind, "data": chunk})
        except asyncio.CancelledError:
            return
        except (OSError, ValueError) as exc:
            # A broken pipe ends the stream; the exit code still decides status.
            logger.warning("agent_stream_error", pid=self.pid, stream=kind, error=str(exc))

    async def _watch(self) -> None:
        assert self.proc
        try:
            code = await self.proc.wait()
            _, pending = await asyncio.wait(self._pump_tasks, timeout=self.drain_seconds)
        except asyncio.CancelledError:
            return
        if pending:
            logger.info("agent_pipes_still_open", pid=self.pid, streams=len(pending))
            for task in pending:
                task.cancel()
        await self._events.put({"kind": "exit", "code": code})
        await self._events.put(None)

    async def events(self) -> AsyncIterator[dict]:
        while True:
            ev = await self._events.get()
            if ev is None:
                break
            yield ev

    def _signal_group(self, sig: int) -> None:
        if not self.proc or self.proc.returncode is not None:
            return
        try:
            os.killpg(self.proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.proc.send_signal(sig)

    def terminate(self) -> None:
        self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        self._signal_group(signal.SIGKILL)

    async def wait(self) -> int:
        if not self.proc:
            raise RuntimeError("agent process not started")
        return await self.proc.wait()

    async def stop(self) -> None:
        self.kill()
        for task in self._pump_tasks:
            task.cancel()
        if self._watch_task:
            self._watch_task.cancel()


class ProcessSupervisor:
    """Own the spawn, cancel and exit bookkeeping for one process per session."""

    def __init__(
        self,
        grace_seconds: float = 5.0,
        process_factory: Optional[Callable[..., AgentProcess]] = None,
    ) -> None:
        self.grace_seconds = grace_seconds
        self._factory = process_factory
        self._procs: Dict[str, AgentProcess] = {}
        self._kill_timers: Dict[str, asyncio.Task] = {}

    def is_live(self, session_id: str) -> bool:
        return session_id in self._procs

    async def start(self, session: Session, argv: Sequence[str], cwd: str) -> AgentProcess:
        factory = self._factory or AgentProcess
        proc = factory(argv, cwd=cwd)
        await proc.start()
        session.pid = proc.pid
        self._procs[session.id] = proc
        logger.info("agent_spawned", session_id=session.id, pid=proc.pid, cwd=cwd)
        if session.cancelled:
            # Cancelled while the spawn was in flight.
            self._terminate(session, proc)
        return proc

    def cancel(self, session: Session) -> bool:
        """Record cancel intent and signal the process if it is running.

        Intent set before the handle exists is honoured by ``start``.
        """
        if not session.mark_cancelled():
            return True
        proc = self._procs.get(session.id)
        if proc is not None:
            self._terminate(session, proc)
        else:
            logger.info("agent_cancel_pending_spawn", session_id=session.id)
        return True

    def _terminate(self, session: Session, proc: AgentProcess) -> None:
        logger.info("agent_cancel_requested", session_id=session.id, pid=proc.pid)
        proc.terminate()
        self._kill_timers[session.id] = asyncio.create_task(
            self._kill_after_grace(session.id, proc), name=f"kill-{session.id}"
        )

    async def _kill_after_grace(self, session_id: str, proc: AgentProcess) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("agent_force_kill", session_id=session_id, pid=proc.pid)
            proc.kill()
        except asyncio.CancelledError:
            return
        finally:
            self._kill_timers.pop(session_id, None)

    def finalize(self, session: Session, exit_code: Optional[int], now: float) -> bool:
        """Release the handle and settle the session; False if already settled."""
        self.release(session.id)
        return session.finalize(exit_code, now)

    def release(self, session_id: str) -> None:
        self._procs.pop(session_id, None)
        timer = self._kill_timers.pop(session_id, None)
        if timer and not timer.done():
            timer.cancel()

    async def stop(self) -> None:
        procs: List[AgentProcess] = list(self._procs.values())
        for session_id in list(self._procs):
            self.release(session_id)
        for proc in procs:
            await proc.stop()
