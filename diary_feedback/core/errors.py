"""Domain exceptions for the feedback batch."""


class FeedbackBatchError(Exception):
    """Base exception for batch errors."""

    pass


class DuplicateEnqueueError(FeedbackBatchError):
    """Raised when a user already has a pending or processing queue row."""

    def __init__(self, user_id: str, status: str | None = None):
        detail = f" (status: {status})" if status else ""
        super().__init__(f"User {user_id} is already queued or being processed{detail}")
        self.user_id = user_id
        self.status = status


class StoreUnavailableError(FeedbackBatchError):
    """Raised when a backing store (queue, diary, directory) cannot be reached."""

    def __init__(self, store: str, message: str):
        super().__init__(f"{store} unavailable: {message}")
        self.store = store


class QueueWriteError(StoreUnavailableError):
    """The queue store failed while recording an already finished user result."""

    def __init__(self, result, cause: StoreUnavailableError):
        FeedbackBatchError.__init__(self, str(cause))
        self.store = cause.store
        self.result = result


class DuplicateFeedbackError(FeedbackBatchError):
    """Signals that feedback for (user, persona, date) already exists."""

    def __init__(self, user_id: str, persona_id: str, feedback_date: str):
        super().__init__(
            f"Feedback already stored for user {user_id}, "
            f"persona {persona_id} on {feedback_date}"
        )
        self.user_id = user_id
        self.persona_id = persona_id
        self.feedback_date = feedback_date


class PermanentUserFailureError(FeedbackBatchError):
    """A user's queue item failed after exhausting its retries."""

    def __init__(self, user_id: str, attempts: int, last_error: str):
        super().__init__(
            f"User {user_id} failed permanently after {attempts} attempts: {last_error}"
        )
        self.user_id = user_id
        self.attempts = attempts
        self.last_error = last_error
