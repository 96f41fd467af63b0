"""Job lifecycle rules.

    PENDING   -> SCHEDULED | RUNNING | CANCELLED
    SCHEDULED -> RUNNING | CANCELLED
    RUNNING   -> COMPLETED | FAILED | CANCELLED

COMPLETED, FAILED and CANCELLED are terminal.
"""

from scrapeflow.models.job import JobStatus
from scrapeflow.utils.errors import InvalidStateTransition

VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.SCHEDULED, JobStatus.RUNNING, JobStatus.CANCELLED}
    ),
    JobStatus.SCHEDULED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
RUNNABLE_STATES = frozenset({JobStatus.PENDING, JobStatus.SCHEDULED})


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def assert_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise InvalidStateTransition unless current -> target is a legal edge."""
    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"Invalid status transition from {current} to {target}",
            current=str(current),
            target=str(target),
        )
