from enum import Enum


class JobState(str, Enum):
    QUEUED      = "queued"
    RESOLVING   = "resolving"
    DOWNLOADING = "downloading"
    VERIFYING   = "verifying"
    COMPLETE    = "complete"
    FAILED      = "failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETE, JobState.FAILED})

# Única progresión válida; ningún estado vuelve atrás y DOWNLOADING sólo se
# alcanza desde RESOLVING (un proceso por job).
ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.RESOLVING}),
    JobState.RESOLVING: frozenset({JobState.DOWNLOADING, JobState.FAILED}),
    JobState.DOWNLOADING: frozenset({JobState.VERIFYING, JobState.FAILED}),
    JobState.VERIFYING: frozenset({JobState.COMPLETE, JobState.FAILED}),
    JobState.COMPLETE: frozenset(),
    JobState.FAILED: frozenset(),
}
