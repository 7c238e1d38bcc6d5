# worker_main.py
"""
DB Queue Worker for accountability reconciliation (STRICT)

Receiver logic
--------------
Each QueueMessage row has a receiver_id column.

This worker process is identified by QUEUE_RECEIVER_ID (env var).
AsyncGuard polls ONLY messages where:
    QueueMessage.receiver_id == QUEUE_RECEIVER_ID

Clients (accountability.reconciliation_jobs.ReconciliationJobs) decide which
worker handles a request by writing receiver_id = <that worker's id>.

Routing logic
-------------
Routing is done by sender_id prefix:
    "<app_key><app_key_delim><workspace_id>"

  - "accountability::ws_123" -> AccountabilityApp, workspace_id="ws_123"

STRICT mode: no fallback app. An unknown prefix is answered with an error.

Message types handled by AccountabilityApp
------------------------------------------
  - check_accountability      {user_id, workspace_id} -> missing items (read-only)
  - reconcile_accountability  {user_id, workspace_id} -> missing/created/existing
  - artifact_event            {event, target_id, workspace_id} -> closes the remediation issue

Replies go back to the sender address as "<type>_response".
Different workspaces never block each other here; the only serialization
point is the workspace lock taken by the materializer on issue creation.
"""

import os
import asyncio
import logging
import traceback
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
load_dotenv()

from accountability.accountability_service import AccountabilityService
from accountability.auto_resolution import ArtifactEvent
from accountability.entities import QueueMessage
from accountability.GCConnection_hlpr import GCConnection
from accountability.reconciliation_jobs import APP_KEY, APP_KEY_DELIM


logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("accountability_worker")

QUEUE_RECEIVER_ID = os.getenv("QUEUE_RECEIVER_ID")
CONCURRENT_INSTANCES = int(os.getenv("CONCURRENT_INSTANCES", "4"))
RECONCILE_POLL_INTERVAL = float(os.getenv("RECONCILE_POLL_INTERVAL", "1.0"))


def _jsonable(value):
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


class JobContext:
    def __init__(self, job: Dict[str, Any], sender_full: str, workspace_id: str, app_prefix: str):
        self.job = job
        self.sender_full = sender_full
        self.workspace_id = workspace_id
        self.app_prefix = app_prefix


class AppHost:
    def __init__(self, Session, receiver_id: str, apps: List[Any]):
        self.SessionFactory = Session
        self.receiver_id = receiver_id
        self.apps = list(apps or [])

    def _send_queue_message(
        self,
        to_receiver_id: str,
        msg_type: str,
        payload: Dict[str, Any],
        from_sender_id: str,
    ) -> None:
        session = self.SessionFactory()
        try:
            session.add(
                QueueMessage(
                    sender_id=str(from_sender_id),
                    receiver_id=str(to_receiver_id),
                    type=msg_type,
                    payload=payload,
                )
            )
            session.commit()
        finally:
            session.close()

    def _resolve_app(self, sender_full: str) -> Tuple[Any, str, str]:
        """
        STRICT: must match a registered app prefix.
        Returns: (app, matched_prefix, workspace_id)
        """
        candidates: List[Tuple[int, str, Any]] = []

        for app in self.apps:
            prefix = f"{getattr(app, 'key', '')}{getattr(app, 'key_delim', '')}"
            if not prefix:
                continue
            if sender_full.startswith(prefix):
                candidates.append((len(prefix), prefix, app))

        if not candidates:
            known = [f"{getattr(a,'key','')}{getattr(a,'key_delim','')}" for a in self.apps]
            raise RuntimeError(f"No app matched sender_id='{sender_full}'. Known prefixes: {known}")

        candidates.sort(key=lambda x: x[0], reverse=True)
        _, prefix, app = candidates[0]
        return app, prefix, sender_full[len(prefix):]

    def process_queue_job(self, job: Dict[str, Any]) -> None:
        sender_full = str(job.get("sender_id") or "")
        msg_type = job.get("type") or "unknown"

        try:
            app, prefix, workspace_id = self._resolve_app(sender_full)
            ctx = JobContext(job, sender_full, workspace_id, prefix)
            response_payload = app.handle(job, ctx)
        except Exception as e:
            logger.info("Error processing job id=%s type=%s: %s", job.get("id"), msg_type, e)
            traceback.print_exc()
            response_payload = {"status": "error", "message": str(e)}

        self._send_queue_message(
            to_receiver_id=sender_full,
            msg_type=f"{msg_type}_response",
            payload=response_payload,
            from_sender_id=str(job.get("receiver_id")),
        )


class AccountabilityApp:
    """
    KEY WIRING:
      sender_id must start with:  "accountability::"
    """
    key = APP_KEY
    key_delim = APP_KEY_DELIM

    def __init__(self, service: AccountabilityService) -> None:
        # one service per process, so its artifact-event subscription is registered once
        self.service = service

    def _require(self, payload: Dict[str, Any], *names: str) -> List[str]:
        missing = [n for n in names if not payload.get(n)]
        if missing:
            raise ValueError(f"Missing {missing} in payload")
        return [str(payload[n]) for n in names]

    def handle(self, job: Dict[str, Any], ctx: JobContext) -> Dict[str, Any]:
        msg_type = job.get("type")
        payload = dict(job.get("payload") or {})
        payload.setdefault("workspace_id", ctx.workspace_id)

        if msg_type == "check_accountability":
            user_id, workspace_id = self._require(payload, "user_id", "workspace_id")
            items = self.service.check_missing_accountability(user_id, workspace_id)
            data = {"missing_items": [asdict(i) for i in items]}

        elif msg_type == "reconcile_accountability":
            user_id, workspace_id = self._require(payload, "user_id", "workspace_id")
            data = asdict(self.service.check_and_create_accountability_issues(user_id, workspace_id))

        elif msg_type == "artifact_event":
            event, target_id, workspace_id = self._require(payload, "event", "target_id", "workspace_id")
            self.service.events.publish(ArtifactEvent.parse(event), target_id, workspace_id)
            data = {"event": event, "target_id": target_id}

        else:
            raise ValueError(f"Unknown request type: {msg_type}")

        return {"status": "success", "workspace_id": ctx.workspace_id, "data": _jsonable(data)}


class AsyncGuard:
    def __init__(
        self,
        host: AppHost,
        receiver_id: str,
        poll_interval: float = 1.0,
        max_concurrent: int = 4,
    ):
        self.host = host
        self.receiver_id = receiver_id
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._in_flight = set()
        self._tasks = set()
        self.SessionFactory = host.SessionFactory

    async def _run_job(self, job: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.host.process_queue_job, job)
        finally:
            self._in_flight.discard(job["id"])

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Queue job task failed: %s", task.exception())

    def _claim(self, limit: int) -> List[Dict[str, Any]]:
        session = self.SessionFactory()
        try:
            rows = (
                session.query(QueueMessage)
                .filter(QueueMessage.receiver_id == str(self.receiver_id))
                .order_by(QueueMessage.created_at.asc())
                .with_for_update(skip_locked=True)
                .limit(limit)
                .all()
            )

            jobs = [
                {
                    "id": r.id,
                    "sender_id": r.sender_id,
                    "receiver_id": r.receiver_id,
                    "type": r.type,
                    "payload": r.payload,
                }
                for r in rows
            ]

            for r in rows:
                session.delete(r)

            session.commit()
            return jobs
        finally:
            session.close()

    async def run_once(self) -> int:
        available_slots = self.max_concurrent - len(self._in_flight)
        if available_slots <= 0:
            return 0

        jobs = await asyncio.to_thread(self._claim, available_slots)
        started = 0
        for job in jobs:
            if job["id"] in self._in_flight:
                continue
            self._in_flight.add(job["id"])
            task = asyncio.create_task(self._run_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._task_done)
            started += 1
        return started

    async def run(self) -> None:
        logger.info("AsyncGuard running - receiver_id=%s (max_concurrent=%d)", self.receiver_id, self.max_concurrent)

        while True:
            await self.run_once()
            await asyncio.sleep(self.poll_interval)


def build_host(receiver_id: str, session_factory=None, service: Optional[AccountabilityService] = None) -> AppHost:
    session_factory = session_factory or GCConnection().build_db_session_factory()
    service = service or AccountabilityService(session_factory)
    return AppHost(session_factory, receiver_id=receiver_id, apps=[AccountabilityApp(service)])


def main() -> None:
    if not QUEUE_RECEIVER_ID:
        raise RuntimeError("QUEUE_RECEIVER_ID env var is required for DB queue mode")

    host = build_host(QUEUE_RECEIVER_ID)
    guard = AsyncGuard(
        host=host,
        receiver_id=QUEUE_RECEIVER_ID,
        poll_interval=RECONCILE_POLL_INTERVAL,
        max_concurrent=CONCURRENT_INSTANCES,
    )
    asyncio.run(guard.run())


if __name__ == "__main__":
    main()
