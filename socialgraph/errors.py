from datetime import datetime


class SocialGraphError(Exception):
    """Base exception for social graph errors.

    Attributes:
        retryable: Whether the caller may retry the same call
    """

    retryable: bool = False


class ValidationError(SocialGraphError):
    """Exception raised for invalid input such as a self-follow."""

    pass


class RateLimitExceeded(SocialGraphError):
    """Exception raised when an action exceeds one of its rate windows."""

    def __init__(
        self, action: str, reset_time: datetime | None, raised_at: datetime | None = None
    ) -> None:
        self.action = action
        self.reset_time = reset_time
        self.raised_at = raised_at
        when = reset_time.isoformat() if reset_time else "later"
        super().__init__(f"Too many {action} actions. Try again after {when}.")

    @property
    def retry_after(self) -> int:
        """Whole seconds until the action is allowed again; 60 when unknown."""
        if self.reset_time is None or self.raised_at is None:
            return 60
        return max(1, int((self.reset_time - self.raised_at).total_seconds()))


class SpamDetected(SocialGraphError):
    """Exception raised when an action is flagged as spam."""

    def __init__(self, reason: str | None) -> None:
        self.reason = reason
        super().__init__(reason or "This action has been flagged as potential spam")


class PrivacyRestriction(SocialGraphError):
    """Exception raised when privacy or block settings prevent an action."""

    pass


class Duplicate(SocialGraphError):
    """Exception raised when the requested relationship already exists."""

    pass


class NotFound(SocialGraphError):
    """Exception raised when a user, relationship or request is missing."""

    pass


class Unauthorized(SocialGraphError):
    """Exception raised when the actor may not perform the action."""

    pass


class AuthenticationRequired(SocialGraphError):
    """Exception raised when no valid credentials were supplied."""

    pass


class ConflictError(SocialGraphError):
    """Exception raised when the remote store rejects a conflicting write."""

    pass


class StoreUnavailable(SocialGraphError):
    """Exception raised when a backing key/value store cannot be reached."""

    pass


class NetworkError(SocialGraphError):
    """Exception raised when a remote call fails or times out."""

    retryable = True

    def __init__(self, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(f"Network error: {cause}")
