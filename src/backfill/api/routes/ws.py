"""WebSocket hub for live job progress.

Clients send JSON messages of the form {"event": "...", "jobId": "..."}:
  subscribe-to-job      receive events for one job
  unsubscribe-from-job  stop receiving events for one job
  subscribe-to-all-jobs receive events for every job
  get-connection-stats  connection counters
Every server message is a JSON object with an "event" field.
"""

import json

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from backfill.jobs.progress import EventTransport, ProgressEvent
from backfill.models import ms_to_iso, now_ms

log = structlog.get_logger(__name__)

router = APIRouter()


class JobUpdateHub(EventTransport):
    """Tracks WebSocket subscriptions and fans job events out to them.

    A socket subscribed both to a job and to all jobs gets each event once.
    """

    def __init__(self) -> None:
        self.connections: dict[WebSocket, set[str]] = {}
        self.all_jobs: set[WebSocket] = set()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self.connections[ws] = set()
        log.info("jobs_ws_connected", total=len(self.connections))
        await ws.send_json(_message("connected", message="Connected to job updates"))

    def disconnect(self, ws: WebSocket) -> None:
        self.connections.pop(ws, None)
        self.all_jobs.discard(ws)
        log.info("jobs_ws_disconnected", total=len(self.connections))

    def subscribe(self, ws: WebSocket, job_id: str) -> None:
        self.connections.setdefault(ws, set()).add(job_id)

    def unsubscribe(self, ws: WebSocket, job_id: str) -> None:
        self.connections.get(ws, set()).discard(job_id)

    def subscribe_all(self, ws: WebSocket) -> None:
        self.all_jobs.add(ws)

    def stats(self) -> dict:
        return {
            "connectedClients": len(self.connections),
            "allJobsSubscribers": len(self.all_jobs),
            "jobSubscriptions": sum(len(jobs) for jobs in self.connections.values()),
        }

    async def deliver(self, event: ProgressEvent) -> None:
        """Send an event to its subscribers, dropping sockets that fail."""
        payload = event.to_payload()
        for ws, jobs in list(self.connections.items()):
            if ws not in self.all_jobs and event.job_id not in jobs:
                continue
            try:
                await ws.send_json(payload)
            except Exception:
                self.disconnect(ws)
                log.warning(
                    "jobs_ws_send_error",
                    job_id=event.job_id,
                    remaining=len(self.connections),
                )

    async def handle_message(self, ws: WebSocket, raw: str) -> None:
        """Apply one client message and acknowledge it."""
        try:
            data = json.loads(raw)
        except ValueError:
            await ws.send_json(_message("error", message="Invalid JSON"))
            return
        if not isinstance(data, dict):
            await ws.send_json(_message("error", message="Expected a JSON object"))
            return

        action = data.get("event")
        job_id = data.get("jobId")

        if action in ("subscribe-to-job", "unsubscribe-from-job") and not job_id:
            await ws.send_json(_message("error", message="jobId is required"))
        elif action == "subscribe-to-job":
            self.subscribe(ws, job_id)
            await ws.send_json(
                _message("subscribed", jobId=job_id, message=f"Subscribed to job {job_id}")
            )
        elif action == "unsubscribe-from-job":
            self.unsubscribe(ws, job_id)
            await ws.send_json(
                _message("unsubscribed", jobId=job_id, message=f"Unsubscribed from job {job_id}")
            )
        elif action == "subscribe-to-all-jobs":
            self.subscribe_all(ws)
            await ws.send_json(
                _message("subscribed-to-all", message="Subscribed to all job updates")
            )
        elif action == "get-connection-stats":
            await ws.send_json(_message("connection-stats", **self.stats()))
        else:
            await ws.send_json(_message("error", message=f"Unknown event '{action}'"))


def _message(event: str, **fields: object) -> dict:
    return {"event": event, **fields, "timestamp": ms_to_iso(now_ms())}


@router.websocket("/ws/jobs")
async def jobs_websocket(websocket: WebSocket) -> None:
    """WebSocket endpoint for job progress subscriptions."""
    hub: JobUpdateHub = websocket.app.state.hub
    await hub.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await hub.handle_message(websocket, raw)
    except WebSocketDisconnect:
        hub.disconnect(websocket)
