#!/usr/bin/env python3
"""PR hub HTTP API with a live SSE event stream."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Dict, Optional

import structlog
from aiohttp import web

from agent_jobs import coerce_number
from agent_sessions import DispatchResult, DispatchSpec
from hub_errors import AgentSpawnError, CapabilityUnavailableError, HubError, ValidationError
from hub_logging import configure_logging
from pr_hub_core import Hub, HubConfig, install_signal_handlers, parse_duration
from pr_status import PRStatusFetcher

logger = structlog.get_logger()

INDEX_HTML = """<!doctype html>
<html>
<head>
<meta charset="utf-8" />
<title>PR Hub</title>
<style>
body{font:14px system-ui,Segoe UI,Roboto,Helvetica,Arial;margin:0;background:#f7f9fc;color:#1f2933}
#bar{display:flex;gap:8px;padding:10px 14px;background:#101727;color:#fff;align-items:center;position:sticky;top:0}
#brand{background:#1f7aec;padding:4px 10px;border-radius:999px;font-weight:600}
#status{margin-left:8px;font-size:12px;color:#cbd5f5}
#log{padding:16px;display:flex;flex-direction:column;gap:8px}
.entry{background:#fff;border-left:4px solid #1f7aec;border-radius:8px;padding:10px 12px;box-shadow:0 1px 3px rgba(15,23,42,0.08)}
.entry.job{border-color:#14b8a6}
.entry.error{border-color:#ef4444;color:#b91c1c}
.entry.info{border-color:#94a3b8;color:#475569}
.entry small{display:block;color:#64748b;font-size:12px;margin-bottom:4px}
.entry pre{margin:0;white-space:pre-wrap}
</style>
</head>
<body>
<div id="bar"><span id="brand">PR Hub</span><small id="status">connecting</small></div>
<div id="log"></div>
<script>
(function(){
  function addEntry(text, kind, meta){
    var log = document.getElementById('log');
    var entry = document.createElement('div');
    entry.className = 'entry' + (kind ? ' ' + kind : '');
    var small = document.createElement('small');
    small.textContent = meta || '';
    entry.appendChild(small);
    var body = document.createElement('pre');
    body.textContent = text;
    entry.appendChild(body);
    log.insertBefore(entry, log.firstChild);
  }
  var statusEl = document.getElementById('status');
  var es = new EventSource('api/sse');
  function on(name, render){
    es.addEventListener(name, function(ev){
      try { render(JSON.parse(ev.data)); } catch(err){ console.error('SSE parse', err); }
    });
  }
  on('connected', function(d){ statusEl.textContent = 'live (client ' + d.clientId + ')'; });
  on('agent-session-created', function(d){ addEntry(d.label || d.id, 'info', 'Session started'); });
  on('agent-stream', function(d){
    var m = d.message || {};
    var raw = m.raw || {};
    var text = raw.text || (m.type === 'assistant' ? JSON.stringify(raw.message || raw) : JSON.stringify(raw));
    addEntry(text, m.kind === 'stderr' ? 'error' : '', d.sessionId + ' · ' + (m.type || '') + (m.subtype ? '/' + m.subtype : ''));
  });
  on('agent-complete', function(d){ addEntry(d.status + ' (exit ' + d.exitCode + ', ' + d.durationMs + 'ms)', d.status === 'complete' ? 'info' : 'error', d.sessionId + ' finished'); });
  on('agent-status', function(d){ addEntry(d.status + (d.summary ? ': ' + d.summary : ''), 'job', d.id); });
  on('pr-update', function(d){ var pr = d.pr || {}; addEntry(pr.title + ' · failing ' + pr.failingChecks + ' · unresolved ' + pr.unresolved, 'job', pr.repo + '#' + pr.number); });
  es.onerror = function(){ statusEl.textContent = 'disconnected'; statusEl.style.color = '#f97316'; };
})();
</script>
</body>
</html>"""


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    try:
        return await handler(request)
    except ValidationError as exc:
        return _error(str(exc), 400)
    except CapabilityUnavailableError as exc:
        return _error(str(exc), 503)
    except AgentSpawnError as exc:
        return _error(str(exc), 500)
    except HubError as exc:
        return _error(str(exc), 500)


async def index(request: web.Request) -> web.Response:
    return web.Response(text=INDEX_HTML, content_type="text/html")


async def sse(request: web.Request) -> web.StreamResponse:
    hub: Hub = request.app["hub"]
    response = web.StreamResponse(
        status=200,
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    await response.prepare(request)
    client = hub.broadcaster.subscribe()
    try:
        while True:
            frame = await client.sink.get()
            if frame is None:
                break
            await response.write(frame.encode())
    except (ConnectionResetError, asyncio.CancelledError, RuntimeError):
        pass
    finally:
        hub.broadcaster.unsubscribe(client.id)
    return response


async def capabilities(request: web.Request) -> web.Response:
    hub: Hub = request.app["hub"]
    return web.json_response(hub.capabilities())


def _dispatch_spec(payload: Dict[str, Any], allow_resume: bool) -> DispatchSpec:
    return DispatchSpec(
        path=str(payload.get("path") or ""),
        prompt=str(payload.get("prompt") or ""),
        repo=payload.get("repo") or None,
        number=payload.get("number") or None,
        label=payload.get("label") or None,
        category=payload.get("type") or None,
        resume_session_id=(payload.get("resumeSessionId") or None) if allow_resume else None,
    )


async def create_session(request: web.Request) -> web.Response:
    hub: Hub = request.app["hub"]
    payload = await _json_body(request)
    result: DispatchResult = await hub.sessions.create(_dispatch_spec(payload, allow_resume=True))
    return web.json_response(
        {
            "dispatched": True,
            "sessionId": result.session.id,
            "pid": result.session.pid,
            "resumed": result.resumed,
        }
    )


async def dispatch_agent(request: web.Request) -> web.Response:
    hub: Hub = request.app["hub"]
    payload = await _json_body(request)
    result: DispatchResult = await hub.sessions.create(_dispatch_spec(payload, allow_resume=False))
    return web.json_response(
        {
            "dispatched": True,
            "sessionId": result.session.id,
            "jobId": result.job_id or payload.get("taskId") or None,
            "pid": result.session.pid,
        }
    )


async def list_sessions(request: web.Request) -> web.Response:
    hub: Hub = request.app["hub"]
    return web.json_response(hub.sessions.list())


async def get_session(request: web.Request) -> web.Response:
    hub: Hub = request.app["hub"]
    session = hub.sessions.get(request.match_info["id"])
    if session is None:
        return _error("Session not found", 404)
    return web.json_response(session.detail())


async def cancel_session(request: web.Request) -> web.Response:
    hub: Hub = request.app["hub"]
    session_id = request.match_info["id"]
    status = hub.sessions.cancel(session_id)
    if status is None:
        return _error("Session not found", 404)
    return web.json_response({"success": True, "id": session_id, "status": status.value})


async def report_job(request: web.Request) -> web.Response:
    hub: Hub = request.app["hub"]
    payload = await _json_body(request)
    logger.info("job_report_received", body=payload)
    if not payload.get("repo") or not payload.get("number") or not payload.get("status"):
        raise ValidationError("Missing required fields: repo, number, status")
    job = hub.jobs.report(
        str(payload["repo"]),
        payload["number"],
        payload["status"],
        category=payload.get("type") or None,
        summary=payload.get("summary") or None,
        error=payload.get("error") or None,
    )
    return web.json_response(job.to_dict())


async def list_jobs(request: web.Request) -> web.Response:
    hub: Hub = request.app["hub"]
    return web.json_response([job.to_dict() for job in hub.jobs.list()])


async def clear_job(request: web.Request) -> web.Response:
    hub: Hub = request.app["hub"]
    repo = request.match_info["repo"]
    number = coerce_number(request.match_info["number"])
    if not hub.jobs.clear(repo, number):
        return _error("Job not found", 404)
    return web.json_response({"success": True, "id": f"{repo}#{number}"})


async def get_pr(request: web.Request) -> web.Response:
    hub: Hub = request.app["hub"]
    repo = request.query.get("repo") or ""
    try:
        number = int(request.query.get("number") or "")
    except ValueError:
        number = 0
    if not repo or number <= 0:
        return _error("Missing or invalid repo or number", 400)
    if hub.fetch_pr is None:
        return _error("PR status fetching is disabled", 503)
    pr = await hub.fetch_pr(repo, number)
    if not pr:
        return _error("Failed to fetch PR data", 500)
    return web.json_response({"pr": pr})


async def _on_startup(app: web.Application) -> None:
    await app["hub"].start()


async def _on_shutdown(app: web.Application) -> None:
    app["hub"].broadcaster.close()


async def _on_cleanup(app: web.Application) -> None:
    await app["hub"].stop()


def create_app(hub: Hub, manage_hub: bool = True) -> web.Application:
    """Build the aiohttp app. With ``manage_hub`` the app starts and stops the hub."""
    app = web.Application(middlewares=[error_middleware])
    app["hub"] = hub
    app.add_routes(
        [
            web.get("/", index),
            web.get("/api/sse", sse),
            web.get("/api/capabilities", capabilities),
            web.post("/api/agent-session", create_session),
            web.post("/api/dispatch-agent", dispatch_agent),
            web.get("/api/agent-sessions", list_sessions),
            web.get("/api/agent-session/{id}", get_session),
            web.delete("/api/agent-session/{id}", cancel_session),
            web.post("/api/agent-job", report_job),
            web.get("/api/agent-jobs", list_jobs),
            web.delete(r"/api/agent-job/{repo:.+}/{number:\d+}", clear_job),
            web.get("/api/pr", get_pr),
        ]
    )
    app.on_shutdown.append(_on_shutdown)
    if manage_hub:
        app.on_startup.append(_on_startup)
        app.on_cleanup.append(_on_cleanup)
    return app


# ---------- CLI ----------


def duration_arg(value: str) -> str:
    """argparse type for durations such as ``500ms``, ``30s`` or ``10m``."""
    if parse_duration(value, -1.0) < 0:
        raise argparse.ArgumentTypeError(f"invalid duration {value!r}; use e.g. 500ms, 30s, 10m, 1h")
    return value


def build_argparser() -> argparse.ArgumentParser:
    defaults = HubConfig()
    parser = argparse.ArgumentParser(description="PR hub API with live agent session streaming")
    parser.add_argument("--host", default=defaults.host, help="Bind address")
    parser.add_argument("--port", type=int, default=defaults.port, help="HTTP port")
    parser.add_argument("--agent-bin", default=defaults.agent_bin, help="Agent CLI binary name or path")
    parser.add_argument("--gh-bin", default="gh", help="GitHub CLI used to refresh PR status")
    parser.add_argument(
        "--no-pr-refresh",
        action="store_true",
        help="Do not refresh PR status after agents finish",
    )
    parser.add_argument("--session-retention", type=duration_arg, default=defaults.session_retention, help="Keep finished sessions this long")
    parser.add_argument("--job-retention", type=duration_arg, default=defaults.job_retention, help="Keep finished jobs this long")
    parser.add_argument("--cancel-grace", type=duration_arg, default=defaults.cancel_grace, help="SIGTERM to SIGKILL grace period")
    parser.add_argument("--refresh-delay", type=duration_arg, default=defaults.refresh_delay, help="Delay before refreshing a PR")
    parser.add_argument("--keepalive", type=duration_arg, default=defaults.keepalive_interval, help="SSE ping interval")
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-json", action="store_true", help="Emit JSON log lines")
    return parser


def config_from_args(args: argparse.Namespace) -> HubConfig:
    return HubConfig(
        agent_bin=args.agent_bin,
        session_retention=args.session_retention,
        job_retention=args.job_retention,
        cancel_grace=args.cancel_grace,
        refresh_delay=args.refresh_delay,
        keepalive_interval=args.keepalive,
        host=args.host,
        port=args.port,
    )


async def async_main(argv: Optional[list[str]] = None) -> None:
    args = build_argparser().parse_args(argv)
    configure_logging(level=args.log_level, json_output=args.log_json)

    config = config_from_args(args)
    fetcher = None if args.no_pr_refresh else PRStatusFetcher(gh_bin=args.gh_bin)
    hub = Hub(config, fetch_pr=fetcher)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    install_signal_handlers(loop, stop_event)

    runner = web.AppRunner(create_app(hub))
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info("hub_listening", url=f"http://{config.host}:{config.port}/", agent_cli=hub.agent_cli)

    await stop_event.wait()
    await runner.cleanup()


def main() -> None:
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
