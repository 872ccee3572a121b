"""
Trading onboarding: proxy wallet deployment, trading auth and token approvals
"""
from .errors import InvalidTransitionError, PlatformAPIError, UserRejectedRequestError
from .flow import TradingOnboarding
from .poller import ProxyWalletPoller
from .steps import ProxyStep, SigningStep, StepEvent, StepState
from .store import UserStore

__all__ = [
    "InvalidTransitionError",
    "PlatformAPIError",
    "UserRejectedRequestError",
    "TradingOnboarding",
    "ProxyWalletPoller",
    "ProxyStep",
    "SigningStep",
    "StepEvent",
    "StepState",
    "UserStore",
]
