class DonationError(Exception):
    """
    Base class for every per-operation failure the donation core reports.
    `message` is safe to show to the user as-is.
    """
    default_message = "Something went wrong with this donation."

    def __init__(self, message: str | None = None, donation_id: str | None = None):
        self.message = message or self.default_message
        self.donation_id = donation_id
        super().__init__(self.message)


class ValidationError(DonationError):
    default_message = "Invalid donation details."

    def __init__(self, field: str, message: str | None = None):
        self.field = field
        super().__init__(message or f"Invalid value for '{field}'.")


class InvalidTransitionError(DonationError):
    default_message = "That action is not available for this donation right now."


class ActorNotPermitted(InvalidTransitionError):
    default_message = "You are not allowed to do that with this donation."


class CancellationWindowClosed(InvalidTransitionError):
    default_message = "The 15 minute window to cancel this request has closed."


class PreconditionFailed(DonationError):
    default_message = "This donation was just changed by someone else."


class DonationNotFound(DonationError):
    default_message = "This donation no longer exists."


class StoreError(DonationError):
    default_message = "Could not reach the donation store. Please try again."


class ConditionFailed(Exception):
    """
    Raised by a store when a conditional write's guards did not hold.
    `current` is the document as the store held it, or None if missing.
    """
    def __init__(self, current: dict | None):
        self.current = current
        super().__init__("conditional write rejected")
