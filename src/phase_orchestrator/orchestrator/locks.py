"""Named, FIFO mutual exclusion over shared external resources.

A resource is anything that must not be driven by two tasks at once (the
canonical example is a single browser automation session). Handles remember
the run that took them so an aborted run can drop everything it holds.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Upper bound on a single condition wait, so cancellation is noticed promptly.
_WAIT_SLICE_SECONDS = 0.05


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Proof of holding `resource`. Release it exactly once (extra releases are no-ops)."""

    resource: str
    holder_id: str
    owner_id: str | None = None
    token: str = field(default_factory=lambda: uuid.uuid4().hex)


class LockTimeoutError(TimeoutError):
    """Raised when a resource could not be acquired within the timeout."""

    def __init__(self, resource: str, holder_id: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:.1f}s waiting for resource {resource!r}")
        self.resource = resource
        self.holder_id = holder_id
        self.timeout = timeout


class LockCancelledError(RuntimeError):
    """Raised when a waiting acquisition is abandoned because its run was cancelled."""

    def __init__(self, resource: str, holder_id: str) -> None:
        super().__init__(f"Acquisition of {resource!r} by {holder_id} was cancelled")
        self.resource = resource
        self.holder_id = holder_id


@dataclass(slots=True)
class _Ticket:
    holder_id: str
    owner_id: str | None


class ResourceLock:
    """Exclusive locks keyed by resource name.

    Waiters on the same resource are served strictly in arrival order. One
    instance is meant to be shared project-wide (by every runner in the process).
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._holders: dict[str, LockHandle] = {}
        self._queues: dict[str, deque[_Ticket]] = {}

    def acquire(
        self,
        resource: str,
        holder_id: str,
        timeout: float,
        *,
        owner_id: str | None = None,
        cancel: threading.Event | None = None,
    ) -> LockHandle:
        """Block until `resource` is free and this caller is first in line.

        Raises:
            LockTimeoutError: If `timeout` seconds elapse first.
            LockCancelledError: If `cancel` is set while waiting.
        """

        ticket = _Ticket(holder_id=holder_id, owner_id=owner_id)
        deadline = time.monotonic() + timeout

        with self._cond:
            queue = self._queues.setdefault(resource, deque())
            queue.append(ticket)
            try:
                while resource in self._holders or queue[0] is not ticket:
                    if cancel is not None and cancel.is_set():
                        raise LockCancelledError(resource, holder_id)
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.warning(
                            "Resource lock timed out",
                            extra={"resource": resource, "holder_id": holder_id},
                        )
                        raise LockTimeoutError(resource, holder_id, timeout)
                    self._cond.wait(min(remaining, _WAIT_SLICE_SECONDS))
            except BaseException:
                queue.remove(ticket)
                if not queue:
                    del self._queues[resource]
                # The next waiter may now be at the head of the queue.
                self._cond.notify_all()
                raise

            queue.popleft()
            if not queue:
                del self._queues[resource]
            handle = LockHandle(resource=resource, holder_id=holder_id, owner_id=owner_id)
            self._holders[resource] = handle

        logger.debug("Resource acquired", extra={"resource": resource, "holder_id": holder_id})
        return handle

    def release(self, handle: LockHandle) -> bool:
        """Release `handle`. Stale or foreign handles are ignored.

        Returns:
            True if this call actually freed the resource.
        """

        with self._cond:
            current = self._holders.get(handle.resource)
            if current is None or current.token != handle.token:
                return False
            del self._holders[handle.resource]
            self._cond.notify_all()

        logger.debug(
            "Resource released",
            extra={"resource": handle.resource, "holder_id": handle.holder_id},
        )
        return True

    def release_owner(self, owner_id: str) -> list[LockHandle]:
        """Release every handle held on behalf of `owner_id` (a workflow run)."""

        with self._cond:
            released = [h for h in self._holders.values() if h.owner_id == owner_id]
            for handle in released:
                del self._holders[handle.resource]
            if released:
                self._cond.notify_all()

        for handle in released:
            logger.info(
                "Resource force-released",
                extra={"resource": handle.resource, "owner_id": owner_id},
            )
        return released

    def holder(self, resource: str) -> LockHandle | None:
        with self._cond:
            return self._holders.get(resource)

    def waiting(self, resource: str) -> int:
        with self._cond:
            return len(self._queues.get(resource, ()))
