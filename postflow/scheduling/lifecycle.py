"""Job state-machine guard."""

from typing import Optional

from postflow.exceptions import InvalidStateError
from postflow.models import JobState


def ensure_transition(
    current: JobState, target: JobState, job_id: Optional[str] = None
) -> None:
    """Raise :class:`InvalidStateError` unless ``current -> target`` is allowed.

    Terminal states accept no transition at all; an attempt to leave one
    is a race or a bug and must surface.
    """
    if current.can_transition_to(target):
        return
    if current.is_terminal:
        message = f"job {job_id} is {current.value} (terminal); cannot move to {target.value}"
    else:
        message = f"invalid transition {current.value} -> {target.value} for job {job_id}"
    raise InvalidStateError(
        message, job_id=job_id, current=current.value, target=target.value
    )


__all__ = ["ensure_transition"]
