class QuizError(Exception):
    """Base exception for caller bugs detected by the assessment engine."""
    pass


class InvalidTransition(QuizError):
    """Raised when an operation is not allowed in the session's current state."""
    def __init__(self, operation: str, state: str, message: str = ""):
        self.operation = operation
        self.state = state
        self.message = message or f"{operation} is not allowed while {state}"
        super().__init__(self.message)


class InvalidQuality(QuizError, ValueError):
    """Raised when a recall quality score falls outside 0-5."""
    def __init__(self, quality):
        self.quality = quality
        self.message = f"quality must be an integer between 0 and 5, got {quality!r}"
        super().__init__(self.message)
