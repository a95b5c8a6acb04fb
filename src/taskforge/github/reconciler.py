"""Reconcile GitHub pull request notifications with the task board.

GitHub delivers webhooks at least once and in no guaranteed order. Tasks are
looked up by (head branch, PR number) and advanced with the pure transitions of
``taskforge.core.task_state``, so a repeated or late delivery leaves the task
where it already is.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from taskforge.core.task_state import pull_request_event
from taskforge.db import Task, TaskStore
from taskforge.errors import SignatureInvalid, UnmappedEvent

logger = logging.getLogger(__name__)


def verify(raw_body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw request body."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False

    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature_header)


def require_signature(raw_body: bytes, signature_header: Optional[str], secret: str) -> None:
    """Raise ``SignatureInvalid`` unless the delivery is signed with ``secret``."""
    if not verify(raw_body, signature_header, secret):
        raise SignatureInvalid("Invalid signature")


@dataclass(frozen=True)
class WebhookEvent:
    """The parts of one delivery the reconciler looks at."""

    delivery_id: Optional[str]
    event_type: str
    signature_valid: bool
    action: Optional[str] = None
    pr_number: Optional[int] = None
    branch_name: Optional[str] = None
    merged: bool = False

    @classmethod
    def from_payload(
        cls,
        event_type: str,
        payload: dict[str, Any],
        delivery_id: Optional[str] = None,
        signature_valid: bool = True,
    ) -> "WebhookEvent":
        pr = payload.get("pull_request") or {}
        return cls(
            delivery_id=delivery_id,
            event_type=event_type,
            signature_valid=signature_valid,
            action=payload.get("action"),
            pr_number=pr.get("number"),
            branch_name=(pr.get("head") or {}).get("ref"),
            merged=bool(pr.get("merged")),
        )


class WebhookReconciler:
    """Applies pull request events to the matching task."""

    def __init__(self, store: TaskStore, clock: Callable[[], datetime] = datetime.utcnow):
        self.store = store
        self.clock = clock

    def find_task(self, branch_name: Optional[str], pr_number: Optional[int]) -> Task:
        task = self.store.find_task_by_pull_request(branch_name, pr_number)
        if task is None:
            raise UnmappedEvent(branch_name, pr_number)
        return task

    def handle_pull_request_event(
        self,
        action: Optional[str],
        pr: dict[str, Any],
        repo: Optional[dict[str, Any]] = None,
    ) -> dict:
        """Advance the task that tracks ``pr``.

        Events for branches no task tracks are acknowledged as ``unmapped``.
        """
        branch_name = (pr.get("head") or {}).get("ref")
        pr_number = pr.get("number")
        merged = bool(pr.get("merged"))
        repo_name = (repo or {}).get("full_name")

        try:
            task = self.find_task(branch_name, pr_number)
        except UnmappedEvent as e:
            logger.info(f"Ignoring pull_request.{action} from {repo_name}: {e}")
            return {"status": "unmapped", "branch": branch_name, "pr_number": pr_number}

        now = self.clock()
        result = self.store.transition_task(
            task.id, lambda state: pull_request_event(state, action, merged, now)
        )
        if result is None:
            # Deleted between lookup and transition
            return {"status": "unmapped", "branch": branch_name, "pr_number": pr_number}

        before, after, task = result
        changed = before is not None and before != after
        if changed:
            logger.info(
                f"Task {task.id}: {before.status.value} -> {after.status.value} "
                f"on pull_request.{action} (PR #{pr_number}, merged={merged})"
            )
        else:
            logger.info(f"Task {task.id} unchanged on pull_request.{action}")

        return {
            "status": "updated" if changed else "unchanged",
            "task_id": task.id,
            "task_status": task.status,
            "column": task.column,
            "build_status": task.build_status,
        }
