"""
Task lock manager - expiring mutual exclusion per task id.

The lock value is the holder's actor id. Acquisition is an atomic
set-if-absent with a TTL, release and refresh are compare-and-act, so an
actor can never release or extend a lock it does not hold. A stalled holder
blocks others for at most the TTL.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from services.errors import TaskLockedError
from services.progress_store import ProgressBackend

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 300
LOCK_KEY = 'drug:task:lock:{task_id}'


class TaskLockManager:
    """
    Usage:
        locks = TaskLockManager(backend)
        with locks.hold(task_id, actor_id):
            ...  # mutate task state
    """

    def __init__(self, backend: ProgressBackend, ttl: float = DEFAULT_LOCK_TTL_SECONDS):
        self.backend = backend
        self.ttl = ttl

    @staticmethod
    def _key(task_id: int) -> str:
        return LOCK_KEY.format(task_id=task_id)

    def holder(self, task_id: int) -> Optional[str]:
        return self.backend.get(self._key(task_id))

    def acquire(self, task_id: int, actor_id: str) -> bool:
        """
        Acquire the lock for an actor.

        Returns:
            True when the lock was newly taken, False when the same actor
            already holds it (its TTL is refreshed, ownership unchanged)

        Raises:
            TaskLockedError: Another actor holds the lock
        """
        actor_id = str(actor_id)
        key = self._key(task_id)
        if self.backend.set_if_absent(key, actor_id, self.ttl):
            logger.info(f"Task {task_id} locked by {actor_id}")
            return True
        if self.backend.expire_if_equals(key, actor_id, self.ttl):
            logger.debug(f"Task {task_id} lock already held by {actor_id}")
            return False
        holder = self.backend.get(key)
        if holder is None:
            # Expired between the two calls, try once more
            if self.backend.set_if_absent(key, actor_id, self.ttl):
                logger.info(f"Task {task_id} locked by {actor_id}")
                return True
            holder = self.backend.get(key)
        logger.warning(f"Task {task_id} lock requested by {actor_id}, held by {holder}")
        raise TaskLockedError(f"Task {task_id} is locked by another user", task_id=task_id, holder=holder)

    def release(self, task_id: int, actor_id: str) -> bool:
        """Release the lock if this actor holds it. Returns whether it was released."""
        released = self.backend.delete_if_equals(self._key(task_id), str(actor_id))
        if released:
            logger.info(f"Task {task_id} unlocked by {actor_id}")
        else:
            logger.debug(f"Task {task_id} lock not held by {actor_id}, nothing released")
        return released

    def refresh(self, task_id: int, actor_id: str) -> bool:
        """Extend the TTL of a held lock. Returns False if the lock was lost."""
        refreshed = self.backend.expire_if_equals(self._key(task_id), str(actor_id), self.ttl)
        if not refreshed:
            logger.warning(f"Task {task_id} lock no longer held by {actor_id}")
        return refreshed

    def is_locked(self, task_id: int) -> bool:
        return self.holder(task_id) is not None

    @contextmanager
    def hold(self, task_id: int, actor_id: str, exclusive: bool = False):
        """
        Hold the lock for the duration of a block. A lock that was already
        held by the same actor on entry is left in place on exit.

        With ``exclusive`` the block only runs on a fresh acquisition: a lock
        the same actor already holds raises TaskLockedError like any other
        holder, so one actor cannot run two mutating operations at once.
        """
        acquired = self.acquire(task_id, actor_id)
        if exclusive and not acquired:
            logger.warning(f"Task {task_id} is already being processed by {actor_id}")
            raise TaskLockedError(f"Task {task_id} is already being processed",
                                  task_id=task_id, holder=str(actor_id))
        try:
            yield acquired
        finally:
            if acquired:
                self.release(task_id, actor_id)
