"""Booking state machine: validates transitions and who may make them.

    pending -> negotiating <-> accepted -> confirmed -> active -> completed

with cancelled / rejected reachable from every non-terminal state.
"""

from bagsy_platform.domain.enums import BookingActor, BookingStatus
from bagsy_platform.domain.errors import PreconditionFailedError


class InvalidTransitionError(PreconditionFailedError):
    """Raised when a booking state transition is not allowed."""

    def __init__(
        self,
        current_status: BookingStatus,
        target_status: BookingStatus,
        reason: str,
    ):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}",
            2006,
        )


# ---------------------------------------------------------------------------
# Transition map: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

S = BookingStatus
A = BookingActor

TRANSITION_MAP: dict[BookingStatus, dict[BookingStatus, set[BookingActor]]] = {
    S.PENDING: {
        S.NEGOTIATING: {A.RENTER, A.OWNER},
        S.ACCEPTED: {A.RENTER, A.OWNER},
    },
    S.NEGOTIATING: {
        S.ACCEPTED: {A.RENTER, A.OWNER},
    },
    S.ACCEPTED: {
        S.CONFIRMED: {A.RENTER},
    },
    S.CONFIRMED: {
        S.ACTIVE: {A.SYSTEM},
    },
    S.ACTIVE: {
        S.COMPLETED: {A.SYSTEM},
    },
}

TERMINAL_STATES: set[BookingStatus] = {
    S.COMPLETED,
    S.CANCELLED,
    S.REJECTED,
}

# Either party (or the platform) can cancel any live booking
CANCELLABLE_STATES: set[BookingStatus] = {
    s for s in BookingStatus if s not in TERMINAL_STATES
}
CANCEL_ACTORS: set[BookingActor] = {A.RENTER, A.OWNER, A.SYSTEM, A.ADMIN}

# The owner (or the platform) can reject any live booking
REJECTABLE_STATES: set[BookingStatus] = CANCELLABLE_STATES
REJECT_ACTORS: set[BookingActor] = {A.OWNER, A.SYSTEM, A.ADMIN}

# Statuses in which offers may be exchanged
NEGOTIABLE_STATES: set[BookingStatus] = {S.PENDING, S.NEGOTIATING}


class BookingStateMachine:
    """Validates booking state transitions."""

    def validate_transition(
        self,
        current_status: BookingStatus,
        target_status: BookingStatus,
        actor: BookingActor,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not."""
        current_status = BookingStatus(current_status)
        target_status = BookingStatus(target_status)

        if current_status in TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Booking is already {current_status.value}",
            )

        if target_status == S.CANCELLED and actor in CANCEL_ACTORS:
            return True

        if target_status == S.REJECTED and actor in REJECT_ACTORS:
            return True

        # Admin can force any non-terminal booking forward
        if actor == A.ADMIN:
            return True

        allowed_targets = TRANSITION_MAP.get(current_status, {})
        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )

        allowed_actors = allowed_targets[target_status]
        if actor not in allowed_actors:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Actor {actor.value} is not permitted for this transition "
                f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
            )

        return True

    def get_allowed_transitions(
        self,
        current_status: BookingStatus,
        actor: BookingActor,
    ) -> list[BookingStatus]:
        """Return list of valid next states for the given actor from the current status."""
        current_status = BookingStatus(current_status)
        if current_status in TERMINAL_STATES:
            return []

        if actor == A.ADMIN:
            return [s for s in BookingStatus if s != current_status]

        results = [
            target
            for target, actors in TRANSITION_MAP.get(current_status, {}).items()
            if actor in actors
        ]
        if actor in REJECT_ACTORS:
            results.append(S.REJECTED)
        if actor in CANCEL_ACTORS:
            results.append(S.CANCELLED)
        return results

    @staticmethod
    def is_terminal(status: BookingStatus | str) -> bool:
        return BookingStatus(status) in TERMINAL_STATES

    @staticmethod
    def can_negotiate(status: BookingStatus | str) -> bool:
        return BookingStatus(status) in NEGOTIABLE_STATES
