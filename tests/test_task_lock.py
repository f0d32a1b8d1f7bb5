"""
Tests for per-task mutual exclusion.
"""

import threading

import pytest

from services.errors import TaskLockedError
from services.progress_store import MemoryBackend
from services.task_lock import TaskLockManager


class TestTaskLockManager:

    def test_acquire_and_release(self, locks):
        assert locks.acquire(1, 'alice') is True
        assert locks.is_locked(1)
        assert locks.holder(1) == 'alice'
        assert locks.release(1, 'alice')
        assert not locks.is_locked(1)

    def test_other_actor_is_refused(self, locks):
        locks.acquire(1, 'alice')
        with pytest.raises(TaskLockedError) as exc:
            locks.acquire(1, 'bob')
        assert exc.value.details['holder'] == 'alice'
        assert locks.holder(1) == 'alice'

    def test_locks_are_per_task(self, locks):
        locks.acquire(1, 'alice')
        assert locks.acquire(2, 'bob') is True

    def test_reentrant_for_same_actor(self, locks, clock):
        """A second acquire by the holder refreshes the TTL without taking ownership again."""
        assert locks.acquire(1, 'alice') is True
        clock.advance(20)
        assert locks.acquire(1, 'alice') is False
        clock.advance(20)
        assert locks.holder(1) == 'alice'

    def test_release_by_non_holder_is_noop(self, locks):
        locks.acquire(1, 'alice')
        assert not locks.release(1, 'bob')
        assert locks.holder(1) == 'alice'

    def test_lock_expires(self, locks, clock):
        """A stalled holder blocks others for at most the TTL."""
        locks.acquire(1, 'alice')
        clock.advance(30)
        assert locks.acquire(1, 'bob') is True
        assert not locks.refresh(1, 'alice')
        assert not locks.release(1, 'alice')
        assert locks.holder(1) == 'bob'

    def test_refresh(self, locks, clock):
        locks.acquire(1, 'alice')
        clock.advance(25)
        assert locks.refresh(1, 'alice')
        clock.advance(25)
        assert locks.holder(1) == 'alice'

    def test_hold_context(self, locks):
        with locks.hold(1, 'alice') as acquired:
            assert acquired
            assert locks.holder(1) == 'alice'
        assert not locks.is_locked(1)

    def test_hold_keeps_outer_lock(self, locks):
        """A nested hold by the same actor leaves the outer lock in place."""
        locks.acquire(1, 'alice')
        with locks.hold(1, 'alice') as acquired:
            assert not acquired
        assert locks.holder(1) == 'alice'

    def test_exclusive_hold_refuses_same_actor(self, locks):
        """An exclusive hold needs a fresh acquisition, even for the holder."""
        locks.acquire(1, 'alice')
        entered = []
        with pytest.raises(TaskLockedError) as exc:
            with locks.hold(1, 'alice', exclusive=True):
                entered.append(True)
        assert entered == []
        assert exc.value.details['holder'] == 'alice'
        # The outer lock survives the refusal
        assert locks.holder(1) == 'alice'

    def test_exclusive_hold_when_free(self, locks):
        with locks.hold(1, 'alice', exclusive=True) as acquired:
            assert acquired
        assert not locks.is_locked(1)

    def test_hold_releases_on_error(self, locks):
        with pytest.raises(RuntimeError):
            with locks.hold(1, 'alice'):
                raise RuntimeError('boom')
        assert not locks.is_locked(1)

    def test_only_one_thread_wins(self):
        locks = TaskLockManager(MemoryBackend(), ttl=30)
        winners = []
        barrier = threading.Barrier(8)

        def contend(actor):
            barrier.wait()
            try:
                if locks.acquire(42, actor):
                    winners.append(actor)
            except TaskLockedError:
                pass

        threads = [threading.Thread(target=contend, args=(f'actor-{i}',)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert locks.holder(42) == winners[0]
