"""
Propagation of identity changes into game records.

Game records reference identities by id, so every merge, link, unlink
and claim has to rewrite references in every game collection. Instead of
rewriting them inline (and losing work when one collection fails), the
identity change writes one PropagationTask per collection in the same
transaction - an outbox - and the Propagator applies them after commit:

1. Each task runs in its own savepoint against one collection
2. A successful task is marked completed and committed on its own
3. A failed task is logged and retried with exponential backoff
4. After max_attempts it is left 'failed' for an operator sweep

Identity changes are never rolled back because a collection failed; the
result reports per-collection errors instead (is_partial).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from scorebook.config import settings
from scorebook.db.models import PropagationTask
from scorebook.games.collections import GameCollection

logger = logging.getLogger(__name__)

OP_REPLACE = "replace"
OP_RESTORE = "restore"

STATUS_PENDING = "pending"
STATUS_RETRY = "retry"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass
class PropagationResult:
    """Outcome of applying propagation tasks, per collection."""
    updated: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    task_ids: list[int] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        """True when at least one collection failed."""
        return bool(self.errors)

    @property
    def total_updated(self) -> int:
        return sum(self.updated.values())

    def add(self, other: "PropagationResult") -> "PropagationResult":
        """Fold another result into this one."""
        for name, count in other.updated.items():
            self.updated[name] = self.updated.get(name, 0) + count
        self.errors.update(other.errors)
        self.task_ids.extend(other.task_ids)
        return self

    def summary(self) -> str:
        """Human-readable summary for logs and scripts."""
        parts = [f"{name}={count}" for name, count in sorted(self.updated.items())]
        text = f"Games updated: {', '.join(parts) if parts else 'none'}"
        if self.errors:
            failed = ", ".join(sorted(self.errors))
            text += f" | Failed collections: {failed}"
        return text


class Propagator:
    """
    Applies identity changes to every registered game collection.

    Collections are passed in explicitly. The Propagator commits: once per
    applied task, plus once after enqueueing in propagate()/restore().

    Usage:
        propagator = Propagator(db_session, default_collections(db_session))

        # Inside an identity transaction
        tasks = propagator.enqueue(old_id=12, new_id=7, stamp_previous=True)
        db_session.commit()
        result = propagator.run_tasks(tasks)
        if result.is_partial:
            ...  # retried later by run_pending()
    """

    def __init__(
        self,
        db: Session,
        collections: Iterable[GameCollection],
        max_attempts: Optional[int] = None,
        retry_base_minutes: Optional[int] = None,
    ):
        """
        Initialize the propagator.

        Args:
            db: SQLAlchemy session for database operations
            collections: Game collections to keep consistent
            max_attempts: Attempts per task before it is marked failed
            retry_base_minutes: First retry delay; doubles per attempt
        """
        self.db = db
        self.collections: dict[str, GameCollection] = {}
        for collection in collections:
            self.collections[collection.name] = collection

        self.max_attempts = max_attempts or settings.propagation_max_attempts
        self.retry_base_minutes = (
            retry_base_minutes
            if retry_base_minutes is not None
            else settings.propagation_retry_base_minutes
        )

    # =========================================================================
    # Enqueueing
    # =========================================================================

    def enqueue(
        self,
        old_id: int,
        new_id: int,
        stamp_previous: bool = False,
    ) -> list[PropagationTask]:
        """
        Record old_id -> new_id rewrites for every collection.

        Call inside the transaction that makes the identity change. Nothing
        is applied until run_tasks().
        """
        return self._enqueue(OP_REPLACE, old_id, new_id, stamp_previous)

    def enqueue_restore(self, identity_id: int) -> list[PropagationTask]:
        """Record the undo of a stamped replace (used by unlink)."""
        return self._enqueue(OP_RESTORE, identity_id, identity_id, False)

    # =========================================================================
    # Applying
    # =========================================================================

    def propagate(self, old_id: int, new_id: int, stamp_previous: bool = False) -> PropagationResult:
        """
        Rewrite every reference to old_id as new_id in every collection.

        Commits the enqueued tasks (and anything else pending in the
        session) before applying them. Safe to repeat.
        """
        tasks = self.enqueue(old_id, new_id, stamp_previous=stamp_previous)
        self.db.commit()
        return self.run_tasks(tasks)

    def restore(self, identity_id: int) -> PropagationResult:
        """Point references stamped with identity_id back at it."""
        tasks = self.enqueue_restore(identity_id)
        self.db.commit()
        return self.run_tasks(tasks)

    def run_tasks(self, tasks: Iterable[PropagationTask]) -> PropagationResult:
        """
        Apply tasks one by one, each in its own savepoint.

        A failing collection is recorded in the result and its task is
        scheduled for retry; the remaining tasks still run.

        Args:
            tasks: Tasks (or task ids) to apply

        Returns:
            PropagationResult with per-collection counts and errors
        """
        result = PropagationResult()
        for task in tasks:
            if isinstance(task, int):
                task = self.db.get(PropagationTask, task)
                if task is None:
                    continue
            if task.status == STATUS_COMPLETED:
                continue
            result.add(self._run_task(task))
        return result

    def run_pending(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> PropagationResult:
        """
        Apply pending tasks and retry tasks whose backoff has elapsed.

        This is the retriable sweep behind scripts/repropagate_identities.py.
        """
        now = now or datetime.utcnow()
        query = (
            self.db.query(PropagationTask)
            .filter(
                or_(
                    PropagationTask.status == STATUS_PENDING,
                    and_(
                        PropagationTask.status == STATUS_RETRY,
                        PropagationTask.next_retry_at <= now,
                    ),
                )
            )
            .order_by(PropagationTask.created_at, PropagationTask.id)
        )
        if limit:
            query = query.limit(limit)

        tasks = query.all()
        if tasks:
            logger.info("Running %s pending propagation tasks", len(tasks))
        return self.run_tasks(tasks)

    def reset_failed(self) -> int:
        """
        Put permanently failed tasks back to pending with a fresh attempt count.

        Use after fixing whatever made them fail.

        Returns:
            Number of tasks reset
        """
        count = (
            self.db.query(PropagationTask)
            .filter(PropagationTask.status == STATUS_FAILED)
            .update(
                {
                    "status": STATUS_PENDING,
                    "attempts": 0,
                    "last_error": None,
                    "next_retry_at": None,
                    "completed_at": None,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return count

    def get_stats(self) -> dict:
        """Task counts by status."""
        rows = (
            self.db.query(PropagationTask.status, func.count(PropagationTask.id))
            .group_by(PropagationTask.status)
            .all()
        )
        stats = {status: 0 for status in (STATUS_PENDING, STATUS_RETRY, STATUS_COMPLETED, STATUS_FAILED)}
        stats.update({status: count for status, count in rows})
        return stats

    # =========================================================================
    # Private Helper Methods
    # =========================================================================

    def _enqueue(
        self,
        operation: str,
        old_id: int,
        new_id: int,
        stamp_previous: bool,
    ) -> list[PropagationTask]:
        tasks = []
        for name in self.collections:
            task = PropagationTask(
                old_identity_id=old_id,
                new_identity_id=new_id,
                collection=name,
                operation=operation,
                stamp_previous=stamp_previous,
                status=STATUS_PENDING,
                attempts=0,
                max_attempts=self.max_attempts,
            )
            self.db.add(task)
            tasks.append(task)
        self.db.flush()
        return tasks

    def _run_task(self, task: PropagationTask) -> PropagationResult:
        result = PropagationResult(task_ids=[task.id])
        collection = self.collections.get(task.collection)

        task.attempts = (task.attempts or 0) + 1
        task.started_at = datetime.utcnow()

        game_ids: list[int] = []
        try:
            if collection is None:
                raise LookupError(f"No game collection registered as '{task.collection}'")

            with self.db.begin_nested():
                if task.operation == OP_RESTORE:
                    game_ids = collection.game_ids_for(task.old_identity_id, previous=True)
                    updated = collection.restore_identity(task.old_identity_id)
                else:
                    game_ids = collection.game_ids_for(task.old_identity_id)
                    updated = collection.replace_identity(
                        task.old_identity_id,
                        task.new_identity_id,
                        stamp_previous=task.stamp_previous,
                    )
        except Exception as e:
            logger.error(
                "Propagation %s %s -> %s failed in collection '%s' (games %s): %s",
                task.operation,
                task.old_identity_id,
                task.new_identity_id,
                task.collection,
                game_ids,
                e,
            )
            self._mark_failed(task, str(e))
            self.db.commit()
            result.errors[task.collection] = str(e)
            return result

        task.status = STATUS_COMPLETED
        task.games_updated = updated
        task.last_error = None
        task.next_retry_at = None
        task.completed_at = datetime.utcnow()
        self.db.commit()

        result.updated[task.collection] = updated
        return result

    def _mark_failed(self, task: PropagationTask, error: str) -> None:
        """
        Schedule a retry with exponential backoff, or give up.

        Delays with the default base of 5 minutes:
        - Attempt 1 fails: retry in 5 minutes
        - Attempt 2 fails: retry in 10 minutes
        - Attempt 3 fails: marked failed (max_attempts=3)
        """
        if task.attempts < task.max_attempts:
            delay_minutes = self.retry_base_minutes * (2 ** (task.attempts - 1))
            task.status = STATUS_RETRY
            task.next_retry_at = datetime.utcnow() + timedelta(minutes=delay_minutes)
        else:
            task.status = STATUS_FAILED
            task.next_retry_at = None
            task.completed_at = datetime.utcnow()
        task.last_error = error[:1000] if error else None  # Truncate long errors
