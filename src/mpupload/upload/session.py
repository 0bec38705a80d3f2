"""Remote upload session coordination."""

from __future__ import annotations

import asyncio
import logging

from statemachine.exceptions import TransitionNotAllowed

from mpupload.models import SessionStatus, UploadSession
from mpupload.upload.client import RemoteUploadService
from mpupload.upload.fsm import create_session_fsm

logger = logging.getLogger(__name__)


class SessionCoordinator:
    """Obtains and controls one remote upload session per user.

    ``start_or_reuse_session`` is idempotent: a cached session that has not
    been completed is returned without a remote call.  Pause, resume and
    complete are thin remote calls; failures propagate to the caller and
    leave the local status unchanged.

    Control calls for one session run one at a time in the order they were
    issued, so the cached status always reflects the last call the service
    answered.
    """

    def __init__(self, remote: RemoteUploadService) -> None:
        self._remote = remote
        self._by_user: dict[str, UploadSession] = {}
        self._control_locks: dict[str, asyncio.Lock] = {}

    def get(self, session_id: str) -> UploadSession | None:
        for session in self._by_user.values():
            if session.session_id == session_id:
                return session
        return None

    def active_session(self, user_id: str) -> UploadSession | None:
        session = self._by_user.get(user_id)
        if session is None or session.status == SessionStatus.COMPLETED:
            return None
        return session

    async def start_or_reuse_session(self, user_id: str) -> str:
        """Return the user's active session id, starting one if needed."""
        session = self.active_session(user_id)
        if session is not None:
            return session.session_id

        session_id = await self._remote.start_session(user_id)
        previous = self._by_user.get(user_id)
        if previous is not None and previous.session_id == session_id:
            # the service handed back a session we already completed
            self._advance(session_id, SessionStatus.CREATED, "reopen_session")
            return session_id
        self._by_user[user_id] = UploadSession(session_id=session_id, user_id=user_id)
        return session_id

    async def pause(self, session_id: str) -> None:
        async with self._control_lock(session_id):
            await self._remote.pause_session(session_id)
            self._advance(session_id, SessionStatus.PAUSED, "pause_session")

    async def resume(self, session_id: str) -> None:
        async with self._control_lock(session_id):
            await self._remote.resume_session(session_id)
            self._advance(session_id, SessionStatus.RESUMED, "resume_session")

    async def complete(self, session_id: str) -> None:
        async with self._control_lock(session_id):
            await self._remote.complete_session(session_id)
            self._advance(session_id, SessionStatus.COMPLETED, "complete_session")
        logger.info("Session %s completed", session_id)

    def _control_lock(self, session_id: str) -> asyncio.Lock:
        return self._control_locks.setdefault(session_id, asyncio.Lock())

    def _advance(self, session_id: str, target: SessionStatus, event: str) -> None:
        """Move the cached session to *target* if the lifecycle allows it."""
        session = self.get(session_id)
        if session is None or session.status == target:
            return
        fsm = create_session_fsm(session.status.value)
        try:
            fsm.send(event)
        except TransitionNotAllowed:
            logger.warning(
                "Session %s: ignoring %s in state %s",
                session_id,
                event,
                session.status.value,
            )
            return
        session.status = SessionStatus(fsm.current_state_value)
