"""
Sorties d'événements de livraison.

La machine d'états reçoit un EventSink à la construction et appelle
`emit()` après chaque transition validée. `emit` est synchrone et ne doit
jamais bloquer : le BroadcastEventSink ne fait que déposer le message dans
une file, une tâche de fond le distribue aux websockets abonnés.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import WebSocket

from models.event import DeliveryEvent

logger = logging.getLogger(__name__)


class EventSink:
    def emit(self, event: DeliveryEvent) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):
    def emit(self, event: DeliveryEvent) -> None:
        pass


class LoggingEventSink(EventSink):
    def emit(self, event: DeliveryEvent) -> None:
        logger.info(
            "[EVENT] %s %s → %s (par %s)",
            event.event_type, event.delivery_id, event.status, event.actor,
        )


class BroadcastEventSink(EventSink):
    """Fan-out websocket, une « salle » par livraison."""

    def __init__(self, max_queue: int = 1000):
        self.rooms: Dict[str, List[WebSocket]] = {}
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._task: Optional[asyncio.Task] = None

    async def connect(self, delivery_id: str, websocket: WebSocket):
        await websocket.accept()
        self.rooms.setdefault(delivery_id, []).append(websocket)
        logger.info(f"[WS] Abonné à {delivery_id} ({len(self.rooms[delivery_id])} actifs)")

    def disconnect(self, delivery_id: str, websocket: WebSocket):
        room = self.rooms.get(delivery_id, [])
        if websocket in room:
            room.remove(websocket)
        if not room:
            self.rooms.pop(delivery_id, None)
        logger.info(f"[WS] Désabonné de {delivery_id}")

    def emit(self, event: DeliveryEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"[WS] File pleine, événement {event.event_type} de {event.delivery_id} perdu")

    async def broadcast(self, event: DeliveryEvent):
        message = event.model_dump(mode="json")
        dead = []
        for ws in list(self.rooms.get(event.delivery_id, [])):
            try:
                await ws.send_json(message)
            except Exception:
                dead.append(ws)

        # Sockets fermés côté client
        for ws in dead:
            self.disconnect(event.delivery_id, ws)

    async def run(self):
        while True:
            event = await self.queue.get()
            try:
                await self.broadcast(event)
            except Exception as e:
                logger.warning(f"[WS] Diffusion échouée pour {event.delivery_id}: {e}")
            finally:
                self.queue.task_done()

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


def safe_emit(sink: EventSink, event: DeliveryEvent) -> None:
    """Un sink en échec ne remet jamais en cause une transition déjà validée."""
    try:
        sink.emit(event)
    except Exception as e:
        logger.warning(f"Émission de l'événement {event.event_type} pour {event.delivery_id} échouée : {e}")
