import logging
import os
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from accountability.auto_resolution import ArtifactEvent
from accountability.entities import QueueMessage
from accountability.utils import Utils

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("accountability_backend")

APP_KEY = "accountability"
APP_KEY_DELIM = "::"


def sender_address(workspace_id: str) -> str:
    return f"{APP_KEY}{APP_KEY_DELIM}{workspace_id}"


class ReconciliationJobs(Utils):
    """
    Client side of the reconciliation queue: writes request rows for the
    worker identified by `receiver_id` and collects its `<type>_response` rows.
    """

    def __init__(self, session_factory: Callable[[], Session], receiver_id: Optional[str] = None):
        self.SessionFactory = session_factory
        self.receiver_id = receiver_id or os.getenv("QUEUE_RECEIVER_ID")
        if not self.receiver_id:
            raise RuntimeError("QUEUE_RECEIVER_ID env var is required to submit reconciliation jobs")

    def _submit(self, workspace_id: str, msg_type: str, payload: dict) -> str:
        session = self.SessionFactory()
        try:
            message = QueueMessage(
                sender_id=sender_address(workspace_id),
                receiver_id=str(self.receiver_id),
                type=msg_type,
                payload=payload,
            )
            session.add(message)
            session.flush()
            message_id = message.id
            session.commit()
        except Exception as e:
            self.color_print(f"_submit(): DB error -> {e}", color="red")
            session.rollback()
            raise
        finally:
            session.close()

        logger.debug("Queued %s id=%s workspace=%s", msg_type, message_id, workspace_id)
        return message_id

    def submit_check(self, user_id: str, workspace_id: str) -> str:
        return self._submit(workspace_id, "check_accountability",
                            {"user_id": str(user_id), "workspace_id": str(workspace_id)})

    def submit_reconcile(self, user_id: str, workspace_id: str) -> str:
        return self._submit(workspace_id, "reconcile_accountability",
                            {"user_id": str(user_id), "workspace_id": str(workspace_id)})

    def submit_artifact_event(self, event, target_id: str, workspace_id: str) -> str:
        event = ArtifactEvent.parse(event)
        return self._submit(workspace_id, "artifact_event", {
            "event": event.value,
            "target_id": str(target_id),
            "workspace_id": str(workspace_id),
        })

    def collect_responses(self, workspace_id: str) -> List[dict]:
        """Pop every response addressed to this workspace's sender address, oldest first."""
        session = self.SessionFactory()
        try:
            rows = (
                session.query(QueueMessage)
                .filter(QueueMessage.receiver_id == sender_address(workspace_id))
                .order_by(QueueMessage.created_at.asc())
                .all()
            )
            responses = [{"id": r.id, "type": r.type, "payload": r.payload} for r in rows]
            for r in rows:
                session.delete(r)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        return responses
