"""
Exceptions raised by the trading onboarding flow and its collaborators
"""


class OnboardingError(Exception):
    """Base class for onboarding errors"""


class UserRejectedRequestError(OnboardingError):
    """The wallet owner declined a signature request"""

    def __init__(self, message: str = "User rejected the request."):
        super().__init__(message)


class PlatformAPIError(OnboardingError):
    """The platform backend answered with an error payload or a non-OK status"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidTransitionError(OnboardingError):
    """A step received an event that is not legal in its current state"""

    def __init__(self, step: str, status: str, event: str):
        super().__init__(f"Illegal transition for {step}: {event} while {status}")
        self.step = step
        self.status = status
        self.event = event
