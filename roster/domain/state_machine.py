from __future__ import annotations

from enum import StrEnum


class MutationState(StrEnum):
    IDLE = "IDLE"
    SUBMITTING = "SUBMITTING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS: dict[MutationState, set[MutationState]] = {
    MutationState.IDLE: {MutationState.SUBMITTING},
    MutationState.SUBMITTING: {MutationState.SUCCESS, MutationState.FAILED},
    MutationState.SUCCESS: {MutationState.IDLE},
    MutationState.FAILED: {MutationState.IDLE},
}


def can_transition(source: MutationState, target: MutationState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


class AuthEvent(StrEnum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
