"""Agent sessions: dispatch, live message buffers, and exit bookkeeping."""
from __future__ import annotations

import asyncio
import itertools
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from agent_jobs import JobCategory, JobRegistry, JobStatus, coerce_enum, coerce_number
from agent_process import AgentProcess, ProcessSupervisor
from event_broadcaster import (
    EVENT_SESSION_COMPLETE,
    EVENT_SESSION_CREATED,
    EVENT_STREAM,
    EventBroadcaster,
)
from hub_errors import AgentSpawnError, CapabilityUnavailableError, ValidationError
from pr_refresh import Correlator
from stream_framer import StreamFramer, StreamMessage

logger = structlog.get_logger()

DEFAULT_AGENT_ARGS = ("--force", "--output-format", "stream-json", "--stream-partial-output")


def _ms(ts: Optional[float]) -> Optional[int]:
    return int(ts * 1000) if ts is not None else None


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not SessionStatus.RUNNING


@dataclass
class Session:
    id: str
    prompt: str
    path: str
    started_at: float
    repo: Optional[str] = None
    number: Optional[int] = None
    label: Optional[str] = None
    category: Optional[JobCategory] = None
    status: SessionStatus = SessionStatus.RUNNING
    pid: Optional[int] = None
    conversation_handle: Optional[str] = None
    completed_at: Optional[float] = None
    exit_code: Optional[int] = None
    messages: List[StreamMessage] = field(default_factory=list)

    @property
    def correlated(self) -> bool:
        return bool(self.repo) and bool(self.number)

    @property
    def cancelled(self) -> bool:
        return self.status is SessionStatus.CANCELLED

    def append(self, message: StreamMessage) -> None:
        self.messages.append(message)
        handle = message.conversation_handle
        if handle and self.conversation_handle is None:
            self.conversation_handle = handle

    def mark_cancelled(self) -> bool:
        if self.status is not SessionStatus.RUNNING:
            return False
        self.status = SessionStatus.CANCELLED
        return True

    def finalize(self, exit_code: Optional[int], now: float) -> bool:
        if self.completed_at is not None:
            return False
        self.exit_code = exit_code
        self.completed_at = now
        if self.status is SessionStatus.CANCELLED:
            return True
        self.status = SessionStatus.COMPLETE if exit_code == 0 else SessionStatus.FAILED
        return True

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "repo": self.repo,
            "number": self.number,
            "status": self.status.value,
            "label": self.label,
            "startedAt": _ms(self.started_at),
            "completedAt": _ms(self.completed_at),
            "messageCount": len(self.messages),
            "conversationId": self.conversation_handle,
        }

    def detail(self) -> Dict[str, Any]:
        payload = self.summary()
        del payload["messageCount"]
        payload.update(
            {
                "prompt": self.prompt,
                "path": self.path,
                "pid": self.pid,
                "exitCode": self.exit_code,
                "messages": [message.to_dict() for message in self.messages],
            }
        )
        return payload


@dataclass
class DispatchSpec:
    path: str
    prompt: str
    repo: Optional[str] = None
    number: Optional[int] = None
    label: Optional[str] = None
    category: Optional[str] = None
    resume_session_id: Optional[str] = None


@dataclass
class DispatchResult:
    session: Session
    resumed: bool

    @property
    def job_id(self) -> Optional[str]:
        if self.session.correlated:
            return f"{self.session.repo}#{self.session.number}"
        return None


class SessionRegistry:
    def __init__(
        self,
        broadcaster: EventBroadcaster,
        supervisor: ProcessSupervisor,
        jobs: JobRegistry,
        correlator: Optional[Correlator] = None,
        agent_bin: Optional[str] = None,
        agent_args: Sequence[str] = DEFAULT_AGENT_ARGS,
        retention_seconds: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.broadcaster = broadcaster
        self.supervisor = supervisor
        self.jobs = jobs
        self.correlator = correlator
        self.agent_bin = agent_bin
        self.agent_args = tuple(agent_args)
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._ids = itertools.count(1)
        self._sessions: Dict[str, Session] = {}
        self._pumps: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def list(self) -> List[Dict[str, Any]]:
        return [session.summary() for session in self._sessions.values()]

    def build_argv(self, prompt: str, resume_handle: Optional[str] = None) -> List[str]:
        argv = [self.agent_bin or "agent"]
        if resume_handle:
            argv.extend(["--resume", resume_handle])
        argv.extend(["-p", prompt])
        argv.extend(self.agent_args)
        return argv

    def _validate(self, spec: DispatchSpec) -> None:
        if not spec.path or not (spec.prompt or "").strip():
            raise ValidationError("Missing required fields: path, prompt")
        if not os.path.isdir(spec.path):
            raise ValidationError(f"Path does not exist: {spec.path}")
        if not self.agent_bin:
            raise CapabilityUnavailableError(
                "Agent CLI not available. Install with: curl https://cursor.com/install -fsSL | bash"
            )

    def _resume_handle(self, prior_id: Optional[str]) -> Optional[str]:
        if not prior_id:
            return None
        prior = self._sessions.get(prior_id)
        if prior is None or not prior.conversation_handle:
            logger.info("resume_handle_missing", prior_session_id=prior_id)
            return None
        logger.info("resume_handle_found", prior_session_id=prior_id, chat_id=prior.conversation_handle)
        return prior.conversation_handle

    async def create(self, spec: DispatchSpec) -> DispatchResult:
        self._validate(spec)
        number = coerce_number(spec.number) if spec.number else None
        category = coerce_enum(JobCategory, spec.category, "type") if spec.category else None
        handle = self._resume_handle(spec.resume_session_id)

        now = self._clock()
        session = Session(
            id=f"session-{int(now * 1000)}-{next(self._ids)}",
            prompt=spec.prompt,
            path=spec.path,
            started_at=now,
            repo=spec.repo or None,
            number=number,
            label=spec.label or None,
            category=category,
            conversation_handle=handle,
        )
        self._sessions[session.id] = session
        log = logger.bind(session_id=session.id)

        self.broadcaster.publish(
            EVENT_SESSION_CREATED,
            {
                "id": session.id,
                "repo": session.repo,
                "number": session.number,
                "status": session.status.value,
                "label": session.label,
                "startedAt": _ms(session.started_at),
                "conversationId": session.conversation_handle,
            },
        )

        argv = self.build_argv(spec.prompt, handle)
        if handle:
            log.info("session_resuming", chat_id=handle, cwd=spec.path)
        else:
            log.info("session_starting", cwd=spec.path)
        try:
            proc = await self.supervisor.start(session, argv, spec.path)
        except AgentSpawnError as exc:
            self._sessions.pop(session.id, None)
            log.error("session_spawn_failed", error=str(exc))
            self.broadcaster.publish(
                EVENT_SESSION_COMPLETE,
                {
                    "sessionId": session.id,
                    "status": SessionStatus.FAILED.value,
                    "exitCode": None,
                    "durationMs": 0,
                    "error": str(exc),
                },
            )
            raise

        if session.correlated:
            self.jobs.start(session.repo, session.number, category)

        self._pumps[session.id] = asyncio.create_task(
            self._pump(session, proc), name=f"pump-{session.id}"
        )
        return DispatchResult(session=session, resumed=handle is not None)

    def cancel(self, session_id: str) -> Optional[SessionStatus]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        self.supervisor.cancel(session)
        return session.status

    def sweep(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        expired = [
            sid
            for sid, session in self._sessions.items()
            if session.completed_at is not None and now - session.completed_at > self.retention_seconds
        ]
        for sid in expired:
            del self._sessions[sid]
            self._pumps.pop(sid, None)
            self.supervisor.release(sid)
        if expired:
            logger.debug("sessions_expired", count=len(expired))
        return len(expired)

    async def stop(self) -> None:
        tasks = [task for task in self._pumps.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.supervisor.stop()

    def _append(self, session: Session, message: StreamMessage) -> None:
        had_handle = session.conversation_handle is not None
        session.append(message)
        if not had_handle and session.conversation_handle:
            logger.info("session_chat_id", session_id=session.id, chat_id=session.conversation_handle)
        self.broadcaster.publish(EVENT_STREAM, {"sessionId": session.id, "message": message.to_dict()})

    async def _pump(self, session: Session, proc: AgentProcess) -> None:
        framer = StreamFramer(clock=self._clock)
        exit_code: Optional[int] = None
        try:
            async for event in proc.events():
                kind = event.get("kind")
                if kind == "stdout":
                    for message in framer.feed(event["data"]):
                        self._append(session, message)
                elif kind == "stderr":
                    message = framer.feed_stderr(event["data"])
                    if message is not None:
                        logger.warning("agent_stderr", session_id=session.id, text=message.text)
                        self._append(session, message)
                elif kind == "exit":
                    exit_code = event.get("code")
        except asyncio.CancelledError:
            return
        for message in framer.flush():
            self._append(session, message)
        self._complete(session, exit_code)

    def _complete(self, session: Session, exit_code: Optional[int]) -> None:
        if not self.supervisor.finalize(session, exit_code, self._clock()):
            return
        assert session.completed_at is not None
        duration_ms = int((session.completed_at - session.started_at) * 1000)
        logger.info(
            "session_exited",
            session_id=session.id,
            exit_code=exit_code,
            status=session.status.value,
            duration_ms=duration_ms,
        )
        self.broadcaster.publish(
            EVENT_SESSION_COMPLETE,
            {
                "sessionId": session.id,
                "status": session.status.value,
                "exitCode": exit_code,
                "durationMs": duration_ms,
            },
        )
        if not session.correlated:
            return
        assert session.repo is not None and session.number is not None
        if session.status is not SessionStatus.CANCELLED and self.jobs.get(session.repo, session.number):
            if session.status is SessionStatus.COMPLETE:
                self.jobs.report(session.repo, session.number, JobStatus.COMPLETE)
            else:
                self.jobs.report(
                    session.repo,
                    session.number,
                    JobStatus.FAILED,
                    error=f"Agent exited with code {exit_code}",
                )
        if session.status is SessionStatus.COMPLETE and self.correlator is not None:
            self.correlator.schedule(session.repo, session.number)
