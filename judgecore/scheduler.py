"""Admission and dispatch of submissions to a pool of judging workers."""
from __future__ import annotations

import logging
import queue
import threading
from enum import StrEnum

from .config import EngineConfig
from .coordinator import Coordinator
from .errors import AlreadyJudged, InfrastructureError, SubmissionNotFound

log = logging.getLogger(__name__)


class SubmitResult(StrEnum):
    ENQUEUED = 'ENQUEUED'
    ALREADY_ACTIVE = 'ALREADY_ACTIVE'
    # the queue is full; the caller should try again later
    BACKPRESSURE_FULL = 'BACKPRESSURE_FULL'


class JudgeQueue(object):
    """Bounded FIFO queue of submission ids served by a fixed worker pool.

    A submission is active from the moment it is enqueued until its
    worker is done with it, and can only be enqueued while inactive.
    The store lease extends that guarantee across processes.
    """

    def __init__(self, coordinator: Coordinator, config: EngineConfig | None = None) -> None:
        self.coordinator = coordinator
        self.config = config if config is not None else coordinator.config.engine
        self.queue: queue.Queue[int] = queue.Queue(maxsize=self.config.queue_depth)
        self._lock = threading.Lock()
        self._active: dict[int, threading.Event] = {}
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []

    # ------------------------------------------------------------------
    # admission

    def submit(self, submission_id: int) -> SubmitResult:
        with self._lock:
            if submission_id in self._active:
                return SubmitResult.ALREADY_ACTIVE
            try:
                self.queue.put_nowait(submission_id)
            except queue.Full:
                log.info('queue full, rejecting submission %s', submission_id)
                return SubmitResult.BACKPRESSURE_FULL
            self._active[submission_id] = threading.Event()
        log.debug('submission %s enqueued', submission_id)
        return SubmitResult.ENQUEUED

    def is_active(self, submission_id: int) -> bool:
        with self._lock:
            return submission_id in self._active

    def cancel(self, submission_id: int) -> bool:
        """Cancel a submission that is queued, running, or waiting in the store.

        A queued or stored submission is marked CANCELLED right away; a
        running one is cancelled by its coordinator before the next
        testcase starts.

        Returns:
            False if the submission was already terminal.
        """
        with self._lock:
            event = self._active.get(submission_id)
            if event is not None:
                event.set()
        if self.coordinator.store.cancel(submission_id):
            log.info('submission %s cancelled', submission_id)
            return True
        # someone holds the lease: only a running coordinator can finish it
        return event is not None

    # ------------------------------------------------------------------
    # discovery

    def poll(self, limit: int | None = None) -> int:
        """Enqueue PENDING submissions from the store.  Returns how many."""
        if limit is None:
            limit = max(0, self.config.queue_depth - self.queue.qsize())
        if limit == 0:
            return 0
        count = 0
        for submission_id in self.coordinator.store.pending_submissions(limit):
            result = self.submit(submission_id)
            if result == SubmitResult.BACKPRESSURE_FULL:
                break
            if result == SubmitResult.ENQUEUED:
                count += 1
        return count

    def recover(self) -> int:
        """Enqueue submissions whose judge died while holding the lease."""
        count = 0
        for submission_id in self.coordinator.store.stale_claims():
            result = self.submit(submission_id)
            if result == SubmitResult.BACKPRESSURE_FULL:
                break
            if result == SubmitResult.ENQUEUED:
                log.warning('submission %s: lease expired, judging it again', submission_id)
                count += 1
        return count

    # ------------------------------------------------------------------
    # workers

    def start(self, poll: bool = False) -> None:
        """Start the workers, and with poll the store poller."""
        if self._threads:
            raise RuntimeError('JudgeQueue already started')
        self._stopping.clear()
        for i in range(self.config.workers):
            thread = threading.Thread(target=self._work, name=f'judge-{i}', daemon=True)
            thread.start()
            self._threads.append(thread)
        if poll:
            thread = threading.Thread(target=self._poll_loop, name='judge-poll', daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: float | None = 30.0) -> None:
        """Stop taking work and wait up to timeout for running judges.

        Submissions still queued stay PENDING in the store.
        """
        self._stopping.set()
        for thread in self._threads:
            thread.join(timeout)
            if thread.is_alive():
                log.warning('%s still busy after %ss', thread.name, timeout)
        self._threads = []

    def drain(self, timeout: float) -> bool:
        """Wait until every enqueued submission has been processed."""
        with self.queue.all_tasks_done:
            return self.queue.all_tasks_done.wait_for(lambda: self.queue.unfinished_tasks == 0, timeout)

    def __enter__(self) -> JudgeQueue:
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    def _work(self) -> None:
        while not self._stopping.is_set():
            try:
                submission_id = self.queue.get(timeout=self.config.dequeue_timeout)
            except queue.Empty:
                continue
            try:
                self._process(submission_id)
            except Exception:
                log.exception('submission %s: unexpected failure in worker', submission_id)
            finally:
                with self._lock:
                    self._active.pop(submission_id, None)
                self.queue.task_done()

    def _process(self, submission_id: int) -> None:
        with self._lock:
            cancel = self._active[submission_id]
        if cancel.is_set():
            log.debug('submission %s was cancelled while queued', submission_id)
            return

        error: Exception | None = None
        for attempt in range(1, self.config.max_attempts + 1):
            try:
                self.coordinator.judge(submission_id, cancel)
                return
            except (AlreadyJudged, SubmissionNotFound) as err:
                log.info('submission %s: %s', submission_id, err)
                return
            except InfrastructureError as err:
                error = err
                log.warning('submission %s: attempt %d of %d failed: %s',
                            submission_id, attempt, self.config.max_attempts, err)
            except Exception as err:
                error = err
                log.exception('submission %s: attempt %d of %d crashed',
                              submission_id, attempt, self.config.max_attempts)
            if attempt < self.config.max_attempts and self._stopping.wait(self.config.retry_backoff):
                # shutting down; the submission is PENDING and will be picked up again
                return

        log.error('submission %s: giving up after %d attempts, last error: %s',
                  submission_id, self.config.max_attempts, error)
        try:
            self.coordinator.record_internal_error(submission_id, f'judging failed: {error}')
        except AlreadyJudged:
            pass

    def _poll_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.recover()
                self.poll()
            except Exception:
                log.exception('polling the store failed')
            self._stopping.wait(self.config.poll_interval)
