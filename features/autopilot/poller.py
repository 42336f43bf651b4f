"""
Client side of the autopilot sync protocol.

A client remembers which session it was watching (a pointer per project),
polls the session snapshot while it is active and stops on the first terminal
status. With no pointer it may ask the server, once per poller lifetime, to
resume the most recent active session for its UI session id. Resume and poll
failures are logged and retried or ignored, never raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable

import httpx

import config
from features.autopilot.models import SessionStatus

log = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset(s.value for s in SessionStatus if s.is_terminal)


class ResumeFailed(Exception):
    """Resuming an earlier session failed; treated as "no active session"."""


# ── Pointer stores ────────────────────────────────────────────────────

class MemoryPointerStore:
    def __init__(self):
        self._pointers: dict[str, str] = {}

    def get(self, project_id) -> str | None:
        return self._pointers.get(str(project_id))

    def set(self, project_id, session_id: str) -> None:
        self._pointers[str(project_id)] = session_id

    def clear(self, project_id) -> None:
        self._pointers.pop(str(project_id), None)


class FilePointerStore:
    """Pointers kept in a small JSON file so they survive a client restart."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def _read(self) -> dict:
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2))

    def get(self, project_id) -> str | None:
        value = self._read().get(str(project_id))
        return value if isinstance(value, str) and value else None

    def set(self, project_id, session_id: str) -> None:
        data = self._read()
        data[str(project_id)] = session_id
        self._write(data)

    def clear(self, project_id) -> None:
        data = self._read()
        if data.pop(str(project_id), None) is not None:
            self._write(data)


# ── Transports ────────────────────────────────────────────────────────

class EngineTransport:
    """Talks to an AutopilotEngine in the same process."""

    def __init__(self, engine):
        self.engine = engine

    async def snapshot(self, project_id, session_id: str) -> dict | None:
        data = self.engine.status_snapshot(session_id)
        if data is None or data["projectId"] != str(project_id):
            return None
        return data

    async def resume(self, project_id, ui_session_id: str, limit: int = 1) -> list[dict]:
        sessions = await self.engine.resume_sessions(project_id, ui_session_id, limit=limit)
        return [s.to_dict(include_events=False) for s in sessions]

    async def send_message(self, project_id, session_id: str, text: str, kind: str | None = None) -> dict:
        reply = await self.engine.send_message(session_id, text, kind=kind)
        return reply.to_dict()

    async def control(self, project_id, session_id: str, action: str) -> dict:
        reply = await self.engine.control(session_id, action)
        return reply.to_dict()


class HttpTransport:
    """Talks to the API over HTTP."""

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def snapshot(self, project_id, session_id: str) -> dict | None:
        resp = await self.client.get(f"/projects/{project_id}/autopilot/{session_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def resume(self, project_id, ui_session_id: str, limit: int = 1) -> list[dict]:
        resp = await self.client.post(
            f"/projects/{project_id}/autopilot/resume",
            json={"ui_session_id": ui_session_id, "limit": limit},
        )
        resp.raise_for_status()
        return list(resp.json().get("resumed") or [])

    async def send_message(self, project_id, session_id: str, text: str, kind: str | None = None) -> dict:
        resp = await self.client.post(
            f"/projects/{project_id}/autopilot/{session_id}/message",
            json={"text": text, "kind": kind},
        )
        resp.raise_for_status()
        return resp.json()

    async def control(self, project_id, session_id: str, action: str) -> dict:
        resp = await self.client.post(
            f"/projects/{project_id}/autopilot/{session_id}/control",
            json={"action": action},
        )
        resp.raise_for_status()
        return resp.json()

    async def aclose(self) -> None:
        await self.client.aclose()


# ── Poller ────────────────────────────────────────────────────────────

class AutopilotPoller:
    def __init__(
        self,
        transport,
        project_id,
        pointer_store=None,
        ui_session_id: str | None = None,
        interval: float = config.AUTOPILOT_POLL_INTERVAL_SEC,
        fast_interval: float = config.AUTOPILOT_POLL_FAST_INTERVAL_SEC,
        error_interval: float = config.AUTOPILOT_POLL_ERROR_INTERVAL_SEC,
        on_update: Callable[[dict], Any] | None = None,
    ):
        self.transport = transport
        self.project_id = str(project_id)
        self.pointers = pointer_store or MemoryPointerStore()
        self.ui_session_id = ui_session_id
        self.interval = interval
        self.fast_interval = fast_interval
        self.error_interval = error_interval
        self.on_update = on_update
        self.latest: dict | None = None
        self._resume_attempted = False
        self._closed = False
        self._nudged = False
        self._wake = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    async def hydrate(self) -> str | None:
        """Session id to watch: the stored pointer, else one resume attempt."""
        pointer = self.pointers.get(self.project_id)
        if pointer:
            return pointer
        if self._resume_attempted or not self.ui_session_id:
            return None
        self._resume_attempted = True

        try:
            resumed = await self.transport.resume(self.project_id, self.ui_session_id, limit=1)
        except Exception as e:
            err = ResumeFailed(f"Failed to resume autopilot session: {e}")
            log.warning("[AUTOPILOT] %s", err)
            return None

        first = resumed[0] if resumed else None
        session_id = first.get("id") if isinstance(first, dict) else None
        if session_id:
            self.pointers.set(self.project_id, session_id)
            log.info("[AUTOPILOT] Resumed session %s", session_id)
        return session_id or None

    async def run(self) -> dict | None:
        session_id = await self.hydrate()
        if not session_id:
            return None
        return await self.poll_until_terminal(session_id)

    async def poll_until_terminal(self, session_id: str) -> dict | None:
        """Poll until a terminal status or close(); returns the last snapshot seen."""
        while not self._closed:
            try:
                snapshot = await self.transport.snapshot(self.project_id, session_id)
            except Exception as e:
                log.warning("[AUTOPILOT] Poll for %s failed: %s", session_id, e)
                delay = self.error_interval
            else:
                if snapshot is None:
                    self.pointers.clear(self.project_id)
                    return self.latest
                self.latest = snapshot
                if self.on_update is not None:
                    self.on_update(snapshot)
                if snapshot.get("status") in TERMINAL_STATUSES:
                    self.pointers.clear(self.project_id)
                    return snapshot
                self.pointers.set(self.project_id, session_id)
                delay = self.fast_interval if self._nudged else self.interval
                self._nudged = False

            await self._pause(delay)
            if self._nudged and not self._closed:
                self._nudged = False
                await self._pause(self.fast_interval)
        return self.latest

    async def _pause(self, delay: float) -> None:
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def send_message(self, session_id: str, text: str, kind: str | None = None) -> dict:
        reply = await self.transport.send_message(self.project_id, session_id, text, kind)
        self._nudge()
        return reply

    async def control(self, session_id: str, action: str) -> dict:
        reply = await self.transport.control(self.project_id, session_id, action)
        self._nudge()
        return reply

    def _nudge(self) -> None:
        self._nudged = True
        self._wake.set()

    def close(self) -> None:
        self._closed = True
        self._wake.set()
