"""Review notification: tell the approvers a task has entered Done.

Fire-and-forget. Failures are logged and never reach the request that
triggered the transition.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app import config
from app.db import db
from app.registry import review_recipients

logger = logging.getLogger(__name__)


def _post_webhook(url: str, payload: dict[str, Any]) -> None:
    with httpx.Client(timeout=httpx.Timeout(10.0, connect=3.0)) as client:
        r = client.post(url, json=payload)
        r.raise_for_status()


def notify_review(task_id: str, actor: str) -> None:
    app_acronym = task_id.rsplit("_", 1)[0]
    try:
        with db() as conn:
            recipients = review_recipients(conn, app_acronym)
        if not recipients:
            logger.warning("review of %s by %s: no active approvers in application %s", task_id, actor, app_acronym)
            return

        payload = {
            "event": "task.review",
            "task_id": task_id,
            "actor": actor,
            "subject": f"New task for review: {task_id}",
            "text": (
                f"The task {task_id} has just been marked for review by {actor}. "
                "Please log in to approve or reject the task."
            ),
            "recipients": recipients,
        }
        url = config.REVIEW_WEBHOOK_URL
        if not url:
            logger.info(
                "review of %s by %s: notify %s",
                task_id,
                actor,
                ", ".join(r["username"] for r in recipients),
            )
            return
        _post_webhook(url, payload)
        logger.info("review of %s by %s: webhook delivered to %d recipient(s)", task_id, actor, len(recipients))
    except Exception:
        logger.exception("review notification for %s failed", task_id)
