"""Lifecycle state machines for upload jobs and remote sessions.

Each run gets its own FSM instance, initialized at the job's current
status.  Used to validate transition legality before the engine mutates
``FileUploadJob.status``.

The FSMs are purely a validation tool -- they do NOT perform I/O or have
on_enter_state callbacks.
"""

from __future__ import annotations

from statemachine import State, StateMachine


class JobLifecycleSM(StateMachine):
    """Seven-state lifecycle for one file's multipart upload.

    States:
        new                -- Not yet registered with the remote service.
        registered         -- fileId/uploadId obtained and persisted.
        uploading          -- Parts are being sent.
        all_parts_uploaded -- Every part is stored remotely; not completed.
        completed          -- Remote service acknowledged completion.
        paused             -- Run interrupted by cancellation; resumable.
        failed             -- Run aborted by an error; resumable by retry.

    ``discard_registration`` returns a job to ``new`` when the remote
    service no longer knows its fileId.

    ``reupload`` starts a completed path over as a new upload.

    No state has ``final=True`` and every state has an outgoing
    transition; python-statemachine rejects both final states with exits
    and non-final trap states.
    """

    new = State("new", initial=True, value="new")
    registered = State("registered", value="registered")
    uploading = State("uploading", value="uploading")
    all_parts_uploaded = State("all_parts_uploaded", value="all_parts_uploaded")
    completed = State("completed", value="completed")
    paused = State("paused", value="paused")
    failed = State("failed", value="failed")

    register_file = new.to(registered)
    begin_upload = registered.to(uploading)
    resume_upload = paused.to(uploading)
    retry_upload = failed.to(registered)
    finish_parts = uploading.to(all_parts_uploaded)
    complete_file = all_parts_uploaded.to(completed)
    discard_registration = new.from_(registered, paused)
    pause_upload = paused.from_(new, registered, uploading, all_parts_uploaded)
    fail_upload = failed.from_(new, registered, uploading, all_parts_uploaded, paused)
    reupload = completed.to(new)


class SessionLifecycleSM(StateMachine):
    """Remote session lifecycle: created -> paused <-> resumed -> completed.

    ``reopen_session`` covers the service handing back a session id that
    was already completed.
    """

    created = State("created", initial=True, value="created")
    paused = State("paused", value="paused")
    resumed = State("resumed", value="resumed")
    completed = State("completed", value="completed")

    pause_session = paused.from_(created, resumed)
    resume_session = resumed.from_(paused)
    complete_session = completed.from_(created, paused, resumed)
    reopen_session = created.from_(completed)


def create_job_fsm(current_state: str) -> JobLifecycleSM:
    """Create a job FSM positioned at *current_state* (a JobStatus value)."""
    return JobLifecycleSM(start_value=current_state)


def create_session_fsm(current_state: str) -> SessionLifecycleSM:
    """Create a session FSM positioned at *current_state* (a SessionStatus value)."""
    return SessionLifecycleSM(start_value=current_state)
