"""
Trading readiness step state machines

Each prerequisite (proxy wallet deployment, trading auth, token approvals)
is an immutable StepState driven by a pure transition function. Transitions
that are not in the tables raise InvalidTransitionError, so e.g. completing
a step without passing through `signing` cannot happen.

Server-driven events (SERVER_COMPLETED / SERVER_DEPLOYING) only ever move a
step forward; a completed step stays completed.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from .errors import InvalidTransitionError


class ProxyStep(str, Enum):
    IDLE = "idle"
    SIGNING = "signing"
    DEPLOYING = "deploying"
    COMPLETED = "completed"


class SigningStep(str, Enum):
    IDLE = "idle"
    SIGNING = "signing"
    COMPLETED = "completed"


class StepEvent(str, Enum):
    START = "start"                        # user triggered the action
    SUCCEEDED = "succeeded"                # backend confirmed the step is done
    DEPLOYING = "deploying"                # signature accepted, deployment pending
    UNCONFIRMED = "unconfirmed"            # signature accepted, nothing pending
    FAILED = "failed"                      # signing or exchange failed
    SERVER_COMPLETED = "server_completed"  # server state reports the step done
    SERVER_DEPLOYING = "server_deploying"  # server state reports deployment pending
    RESET = "reset"                        # enable dialog dismissed


Status = Union[ProxyStep, SigningStep]


@dataclass(frozen=True)
class StepState:
    status: Status
    error: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status.value == "completed"

    @property
    def is_busy(self) -> bool:
        return self.status.value in ("signing", "deploying")

    def with_error(self, error: Optional[str]) -> "StepState":
        return replace(self, error=error)


_P = ProxyStep
_S = SigningStep
_E = StepEvent

_PROXY_TRANSITIONS: Dict[Tuple[ProxyStep, StepEvent], ProxyStep] = {
    (_P.IDLE, _E.START): _P.SIGNING,
    (_P.IDLE, _E.SERVER_COMPLETED): _P.COMPLETED,
    (_P.IDLE, _E.SERVER_DEPLOYING): _P.DEPLOYING,
    (_P.IDLE, _E.RESET): _P.IDLE,

    (_P.SIGNING, _E.SUCCEEDED): _P.COMPLETED,
    (_P.SIGNING, _E.DEPLOYING): _P.DEPLOYING,
    (_P.SIGNING, _E.UNCONFIRMED): _P.IDLE,
    (_P.SIGNING, _E.FAILED): _P.IDLE,
    (_P.SIGNING, _E.SERVER_COMPLETED): _P.COMPLETED,
    (_P.SIGNING, _E.SERVER_DEPLOYING): _P.DEPLOYING,
    (_P.SIGNING, _E.RESET): _P.IDLE,

    # deploying never falls back to idle
    (_P.DEPLOYING, _E.SUCCEEDED): _P.COMPLETED,
    (_P.DEPLOYING, _E.DEPLOYING): _P.DEPLOYING,
    (_P.DEPLOYING, _E.UNCONFIRMED): _P.DEPLOYING,
    (_P.DEPLOYING, _E.FAILED): _P.DEPLOYING,
    (_P.DEPLOYING, _E.SERVER_COMPLETED): _P.COMPLETED,
    (_P.DEPLOYING, _E.SERVER_DEPLOYING): _P.DEPLOYING,
    (_P.DEPLOYING, _E.RESET): _P.DEPLOYING,

    (_P.COMPLETED, _E.SUCCEEDED): _P.COMPLETED,
    (_P.COMPLETED, _E.DEPLOYING): _P.COMPLETED,
    (_P.COMPLETED, _E.UNCONFIRMED): _P.COMPLETED,
    (_P.COMPLETED, _E.FAILED): _P.COMPLETED,
    (_P.COMPLETED, _E.SERVER_COMPLETED): _P.COMPLETED,
    (_P.COMPLETED, _E.SERVER_DEPLOYING): _P.COMPLETED,
    (_P.COMPLETED, _E.RESET): _P.COMPLETED,
}

_SIGNING_TRANSITIONS: Dict[Tuple[SigningStep, StepEvent], SigningStep] = {
    (_S.IDLE, _E.START): _S.SIGNING,
    (_S.IDLE, _E.SERVER_COMPLETED): _S.COMPLETED,
    (_S.IDLE, _E.RESET): _S.IDLE,

    (_S.SIGNING, _E.SUCCEEDED): _S.COMPLETED,
    (_S.SIGNING, _E.FAILED): _S.IDLE,
    (_S.SIGNING, _E.SERVER_COMPLETED): _S.COMPLETED,
    (_S.SIGNING, _E.RESET): _S.SIGNING,

    (_S.COMPLETED, _E.SUCCEEDED): _S.COMPLETED,
    (_S.COMPLETED, _E.FAILED): _S.COMPLETED,
    (_S.COMPLETED, _E.SERVER_COMPLETED): _S.COMPLETED,
    (_S.COMPLETED, _E.RESET): _S.COMPLETED,
}


def _transition(name: str, table, state: StepState, event: StepEvent, error: Optional[str]) -> StepState:
    next_status = table.get((state.status, event))
    if next_status is None:
        raise InvalidTransitionError(name, state.status.value, event.value)

    if event is StepEvent.FAILED and next_status.value != "completed":
        return StepState(next_status, error)
    # Any other accepted event clears a previous error
    return StepState(next_status, None)


def transition_proxy(state: StepState, event: StepEvent, error: Optional[str] = None) -> StepState:
    """Next proxy-deployment state for `event`"""
    return _transition("proxy", _PROXY_TRANSITIONS, state, event, error)


def transition_signing(state: StepState, event: StepEvent, error: Optional[str] = None) -> StepState:
    """Next state of a signature-only step (trading auth, token approvals)"""
    return _transition("signing", _SIGNING_TRANSITIONS, state, event, error)


def initial_proxy_state() -> StepState:
    return StepState(ProxyStep.IDLE)


def initial_signing_state() -> StepState:
    return StepState(SigningStep.IDLE)
