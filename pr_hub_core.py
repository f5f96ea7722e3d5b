"""Composition root for the PR hub: config, registries, and housekeeping."""
from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from agent_jobs import JobRegistry
from agent_process import AgentProcess, ProcessSupervisor, probe_agent_cli
from agent_sessions import DEFAULT_AGENT_ARGS, SessionRegistry
from event_broadcaster import EventBroadcaster
from pr_refresh import Correlator, FetchPR

logger = structlog.get_logger()


def parse_duration(value: str | int | float | None, default_seconds: float) -> float:
    """Parse ``"500ms"``, ``"30s"``, ``"10m"``, ``"1h"``, ``"1d"`` or a bare number of seconds."""
    if value in (None, ""):
        return default_seconds
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    try:
        if text.endswith("ms"):
            return float(text[:-2]) / 1000.0
        if text.endswith("s"):
            return float(text[:-1])
        if text.endswith("m"):
            return float(text[:-1]) * 60
        if text.endswith("h"):
            return float(text[:-1]) * 3600
        if text.endswith("d"):
            return float(text[:-1]) * 86400
        return float(text)
    except ValueError:
        return default_seconds


@dataclass
class HubConfig:
    agent_bin: str = "agent"
    agent_args: Sequence[str] = DEFAULT_AGENT_ARGS
    session_retention: str = "30m"
    job_retention: str = "10m"
    sweep_interval: str = "60s"
    cancel_grace: str = "5s"
    refresh_delay: str = "3s"
    keepalive_interval: str = "30s"
    host: str = "127.0.0.1"
    port: int = 3456

    def seconds(self, name: str) -> float:
        defaults = {
            "session_retention": 1800.0,
            "job_retention": 600.0,
            "sweep_interval": 60.0,
            "cancel_grace": 5.0,
            "refresh_delay": 3.0,
            "keepalive_interval": 30.0,
        }
        return parse_duration(getattr(self, name), defaults[name])


class Hub:
    """Wire the broadcaster, correlator, registries and supervisor together.

    The HTTP layer holds one Hub; tests build a fresh one per case.
    """

    def __init__(
        self,
        config: Optional[HubConfig] = None,
        fetch_pr: Optional[FetchPR] = None,
        process_factory: Optional[Callable[..., AgentProcess]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or HubConfig()
        self.fetch_pr = fetch_pr
        self.broadcaster = EventBroadcaster(
            keepalive_seconds=self.config.seconds("keepalive_interval"), clock=clock
        )
        self.correlator = Correlator(
            self.broadcaster, fetch_pr, delay_seconds=self.config.seconds("refresh_delay")
        )
        self.jobs = JobRegistry(
            self.broadcaster,
            self.correlator,
            retention_seconds=self.config.seconds("job_retention"),
            clock=clock,
        )
        self.supervisor = ProcessSupervisor(
            grace_seconds=self.config.seconds("cancel_grace"), process_factory=process_factory
        )
        self.sessions = SessionRegistry(
            self.broadcaster,
            self.supervisor,
            self.jobs,
            self.correlator,
            agent_args=self.config.agent_args,
            retention_seconds=self.config.seconds("session_retention"),
            clock=clock,
        )
        self._clock = clock
        self.tasks: List[asyncio.Task] = []
        self._stopping = False

    @property
    def agent_cli(self) -> Optional[str]:
        return self.sessions.agent_bin

    def detect_agent_cli(self) -> Optional[str]:
        self.sessions.agent_bin = probe_agent_cli(self.config.agent_bin)
        return self.sessions.agent_bin

    def capabilities(self) -> Dict[str, Any]:
        return {
            "agentCli": self.agent_cli is not None,
            "agentCliBin": self.agent_cli or self.config.agent_bin,
        }

    async def start(self) -> None:
        self.detect_agent_cli()
        self.tasks.append(asyncio.create_task(self._sweeper(), name="hub-sweeper"))

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        for task in self.tasks:
            task.cancel()
        self.broadcaster.close()
        await self.correlator.stop()
        await self.sessions.stop()

    def sweep(self, now: Optional[float] = None) -> Dict[str, int]:
        now = self._clock() if now is None else now
        return {"sessions": self.sessions.sweep(now), "jobs": self.jobs.sweep(now)}

    async def _sweeper(self) -> None:
        interval = self.config.seconds("sweep_interval")
        try:
            while not self._stopping:
                await asyncio.sleep(interval)
                self.sweep()
        except asyncio.CancelledError:
            return


def install_signal_handlers(loop: asyncio.AbstractEventLoop, set_event: asyncio.Event) -> None:
    def _handler(*_: Any) -> None:
        set_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handler)
        except NotImplementedError:
            pass
