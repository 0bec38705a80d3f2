"""Cooperative cancellation scopes for upload runs.

One :class:`CancelScope` is created per file run; each part upload runs in
a child scope.  Cancelling the run scope cancels the current part's child
scope, aborting its in-flight network call, without touching scopes that
belong to other runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from mpupload.upload.exceptions import UploadCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelScope:
    """A cancellation token with parent -> child propagation.

    Usage::

        scope = CancelScope()
        with scope.child() as part_scope:
            url = await part_scope.run(client.presign_part(file_id, 1))

        # elsewhere (e.g. UploadQueue.pause)
        scope.cancel("paused")
    """

    def __init__(self, parent: CancelScope | None = None) -> None:
        self._parent = parent
        self._event = asyncio.Event()
        self._children: set[CancelScope] = set()
        self.reason: str | None = None
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")

    # ------------------------------------------------------------------
    # Tree management
    # ------------------------------------------------------------------

    def child(self) -> CancelScope:
        """Create a scope that is cancelled whenever this one is."""
        return CancelScope(self)

    def close(self) -> None:
        """Detach from the parent so it no longer propagates to this scope."""
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None

    def __enter__(self) -> CancelScope:
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel this scope and every live child scope.  Idempotent."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise UploadCancelled(self.reason or "cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, aborting it as soon as this scope is cancelled.

        A result that arrives together with the cancellation is still
        returned, so an acknowledged write is never thrown away.

        Raises:
            UploadCancelled: If the scope was cancelled before completion.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        logger.debug("Aborting in-flight call (%s)", self.reason)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise UploadCancelled(self.reason or "cancelled")
