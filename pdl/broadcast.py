"""Change broadcasting to subscribed observers.

The hub keeps a registry of connected observers and the project names
each one follows. Committed changes are published per project name and
delivered best-effort: each delivery is scheduled as its own task, a
failed delivery drops that observer, and nothing is queued or replayed.

An observer is anything with an async ``send_text(str)`` method; the
WebSocket transport hands Starlette's ``WebSocket`` straight in.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .models import Project, now_iso


logger = logging.getLogger("pdl.broadcast")

MESSAGE_TYPES = (
    "subscribe",
    "unsubscribe",
    "pdl_update",
    "project_update",
    "phase_update",
    "sprint_update",
    "log_update",
    "error",
    "ping",
    "pong",
)

SnapshotLoader = Callable[[str], Awaitable[Optional[Project]]]


@dataclass(slots=True)
class WSMessage:
    """One wire frame: ``{type, payload, timestamp, project_name?, session_id?}``."""

    type: str
    payload: Any = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)
    project_name: Optional[str] = None
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.type, "payload": self.payload, "timestamp": self.timestamp}
        if self.project_name is not None:
            data["project_name"] = self.project_name
        if self.session_id is not None:
            data["session_id"] = self.session_id
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "WSMessage":
        """Parse an inbound frame; raise ValueError when it is not a message."""
        data = json.loads(raw)
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            raise ValueError("Message must be a JSON object with a string 'type'")
        return cls(
            type=data["type"],
            payload=data.get("payload", {}),
            timestamp=data.get("timestamp") or now_iso(),
            project_name=data.get("project_name"),
            session_id=data.get("session_id"),
        )


@dataclass(slots=True)
class ClientState:
    subscriptions: Set[str] = field(default_factory=set)
    session_id: Optional[str] = None
    last_seen: float = 0.0


class BroadcastHub:
    """Registry of observers and fan-out of project changes."""

    def __init__(
        self,
        snapshot_loader: Optional[SnapshotLoader] = None,
        heartbeat_timeout: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.snapshot_loader = snapshot_loader
        self.heartbeat_timeout = heartbeat_timeout
        self.clock = clock
        self.clients: Dict[Any, ClientState] = {}
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def connect(self, observer: Any, session_id: Optional[str] = None) -> ClientState:
        state = self.clients.get(observer)
        if state is None:
            state = ClientState(session_id=session_id, last_seen=self.clock())
            self.clients[observer] = state
            logger.info(f"Observer connected ({len(self.clients)} total)")
        return state

    def disconnect(self, observer: Any) -> bool:
        state = self.clients.pop(observer, None)
        if state is not None:
            logger.info(f"Observer disconnected ({len(self.clients)} remaining)")
        return state is not None

    def subscribe(self, observer: Any, project_name: str, session_id: Optional[str] = None) -> ClientState:
        state = self.connect(observer)
        state.subscriptions.add(project_name)
        if session_id is not None:
            state.session_id = session_id
        return state

    def unsubscribe(self, observer: Any, project_name: str) -> bool:
        state = self.clients.get(observer)
        if state is None or project_name not in state.subscriptions:
            return False
        state.subscriptions.discard(project_name)
        return True

    def subscribers(self, project_name: str) -> List[Any]:
        return [observer for observer, state in self.clients.items() if project_name in state.subscriptions]

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def publish(
        self,
        project_name: str,
        message_type: str,
        payload: Any,
        session_id: Optional[str] = None,
    ) -> int:
        """Schedule delivery to every subscriber of project_name.

        Returns the number of observers targeted. Never waits for delivery.
        """
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"Unsupported message type: {message_type}")

        targets = self.subscribers(project_name)
        if not targets:
            return 0

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, dropped {message_type} for '{project_name}'")
            return 0

        text = WSMessage(
            type=message_type,
            payload=payload,
            project_name=project_name,
            session_id=session_id,
        ).to_json()
        for observer in targets:
            task = loop.create_task(self._deliver(observer, text))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return len(targets)

    async def _deliver(self, observer: Any, text: str) -> bool:
        try:
            await observer.send_text(text)
        except Exception as e:
            logger.warning(f"Delivery failed, dropping observer: {e}")
            self.disconnect(observer)
            return False
        return True

    async def send(self, observer: Any, message: WSMessage) -> bool:
        """Send one frame directly to a single observer."""
        return await self._deliver(observer, message.to_json())

    async def send_error(self, observer: Any, error: str, details: Any = None) -> bool:
        return await self.send(observer, WSMessage(type="error", payload={"error": error, "details": details}))

    async def flush(self) -> None:
        """Wait for every delivery scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def handle_message(self, observer: Any, raw: str) -> None:
        state = self.connect(observer)
        state.last_seen = self.clock()

        try:
            message = WSMessage.from_json(raw)
        except ValueError as e:
            await self.send_error(observer, "Invalid message format", str(e))
            return

        if message.type == "subscribe":
            await self._on_subscribe(observer, message)
        elif message.type == "unsubscribe":
            await self._on_unsubscribe(observer, message)
        elif message.type == "ping":
            await self.send(observer, WSMessage(type="pong", payload=message.payload))
        elif message.type == "pong":
            return
        else:
            await self.send_error(observer, "Unknown message type", {"type": message.type})

    async def _on_subscribe(self, observer: Any, message: WSMessage) -> None:
        name = message.project_name
        if not name:
            await self.send_error(observer, "subscribe requires project_name")
            return

        self.subscribe(observer, name, message.session_id)
        await self.send(observer, WSMessage(type="project_update", payload={"subscribed": name}))

        if self.snapshot_loader is None:
            return
        try:
            project = await self.snapshot_loader(name)
        except Exception as e:
            logger.error(f"Failed to load snapshot for '{name}': {e}")
            return
        await self.send(
            observer,
            WSMessage(
                type="project_update",
                payload={"project": project.to_dict() if project else None},
                project_name=name,
            ),
        )

    async def _on_unsubscribe(self, observer: Any, message: WSMessage) -> None:
        name = message.project_name
        if not name:
            await self.send_error(observer, "unsubscribe requires project_name")
            return
        self.unsubscribe(observer, name)
        await self.send(observer, WSMessage(type="project_update", payload={"unsubscribed": name}))

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def heartbeat(self, now: Optional[float] = None) -> int:
        """Ping every observer and drop the ones silent past the timeout.

        Returns how many observers were dropped.
        """
        now = self.clock() if now is None else now
        dropped = 0
        for observer, state in list(self.clients.items()):
            if now - state.last_seen > self.heartbeat_timeout:
                self.disconnect(observer)
                await self._close(observer)
                dropped += 1
                continue
            await self.send(observer, WSMessage(type="ping", payload={"heartbeat": True}))
        if dropped:
            logger.info(f"Heartbeat dropped {dropped} silent observers")
        return dropped

    async def _close(self, observer: Any) -> None:
        close = getattr(observer, "close", None)
        if close is None:
            return
        try:
            await close()
        except Exception as e:
            logger.debug(f"Closing dropped observer failed: {e}")

    async def run_heartbeat(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.heartbeat()

    # ------------------------------------------------------------------
    # Log entries and statistics
    # ------------------------------------------------------------------

    def broadcast_log_update(self, project_name: str, session_id: Optional[str], log_entry: Any) -> int:
        return self.publish(project_name, "log_update", log_entry, session_id=session_id)

    def get_stats(self) -> Dict[str, Any]:
        subscriptions: Dict[str, int] = {}
        for state in self.clients.values():
            for name in state.subscriptions:
                subscriptions[name] = subscriptions.get(name, 0) + 1
        return {
            "total_connections": len(self.clients),
            "subscriptions": subscriptions,
            "pending_deliveries": len(self._pending),
        }
