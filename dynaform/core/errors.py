"""
Exception hierarchy for the dynamic form engine.

Every error the engine raises derives from FormEngineError so callers
(the HTTP layer in particular) can map them to responses in one place.
"""


class FormEngineError(Exception):
    """Base class for all form engine errors."""


class ConfigurationLoadError(FormEngineError):
    """Raised when the configuration source cannot supply a form."""


class OptionResolutionError(FormEngineError):
    """Raised by option fetchers when a lookup fails.

    Never escapes OptionResolver.resolve_options: the resolver logs it
    and reports an empty option list instead.
    """

    def __init__(self, endpoint: str, message: str):
        self.endpoint = endpoint
        self.message = message
        super().__init__(f"Option lookup '{endpoint}' failed: {message}")


class FormValidationError(FormEngineError):
    """Raised when form values fail the generated schema.

    Args:
        errors: Messages keyed by flattened field ID.
    """

    def __init__(self, errors: dict[str, list[str]]):
        self.errors = errors
        fields = ", ".join(errors) or "form"
        super().__init__(f"Validation failed for: {fields}")


class SubmissionError(FormEngineError):
    """Raised when the submission sink rejects or fails a submission."""


class SessionStateError(FormEngineError):
    """Raised when an operation is not permitted in the session's current state."""
