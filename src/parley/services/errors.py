"""Exceptions raised by messaging operations.

Duplicate inserts, duplicate reactions and read-marking already-read messages
are silent no-ops and therefore have no exception type.
"""


class MessagingError(RuntimeError):
    """Base exception for messaging failures.

    Errors are local to the operation that raised them; the session remains
    usable afterwards.
    """


class PolicyDeniedError(MessagingError):
    """Raised when the send quota for the current window is exhausted."""

    def __init__(self, user_id: str, action_type: str) -> None:
        self.user_id = user_id
        self.action_type = action_type
        super().__init__(
            "Rate limit exceeded. Please wait before sending more messages."
        )


class TransientNetworkError(MessagingError):
    """Raised when a backing store call fails.

    Local state is left unchanged; there is no automatic retry.
    """


class SubscriptionFault(MessagingError):
    """Raised when the change-notification channel fails or drops."""
