"""Error taxonomy for the conversation engine.

Every error carries the text the user should see. The message router
catches these at the dispatch boundary and turns them into one direct
reply; nothing here is ever raised out of the delivery producer.
"""

GENERIC_FAILURE_REPLY = "Oooppps! Something went wrong. Try again later."


class RelayError(Exception):
    """Base class for errors that map to a user-visible reply."""

    default_reply = GENERIC_FAILURE_REPLY

    def __init__(self, message: str | None = None, *, reply: str | None = None) -> None:
        super().__init__(message or reply or self.default_reply)
        self.reply = reply or self.default_reply


class InvalidInputError(RelayError):
    """Bad code, malformed username or duplicate value. State is unchanged."""

    def __init__(self, reply: str) -> None:
        super().__init__(reply, reply=reply)


class MissingContextError(RelayError):
    """The status references a room or participant that no longer resolves."""


class AuthorizationError(RelayError):
    """A non-admin user invoked an admin-only command."""

    default_reply = "Forbidden"


class UnhandledStatusError(RelayError):
    """No handler is registered for a conversation status."""


class LockNotAcquiredError(RelayError):
    """A short-lived lock is held by a concurrent operation."""

    default_reply = "Someone else is doing the same thing right now. Try again in a few seconds."
