from __future__ import annotations


class LessonForgeError(Exception):
    """Base class for errors raised by the generation core."""


class PlanParseError(LessonForgeError):
    """Model output could not be turned into a structurally sound plan."""


class RepairParseError(PlanParseError):
    def __init__(self, detail: str = "") -> None:
        message = "Plan repair failed to produce valid JSON"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ProviderError(LessonForgeError):
    """A content or image provider call failed."""


class ProviderConfigurationError(ProviderError):
    """Provider is unknown, unconfigured or rejected our credentials.

    No retry or fallback can repair this, so it is the one error the
    pipeline lets propagate.
    """


class RetryExhaustedError(ProviderError):
    def __init__(self, label: str, attempts: int) -> None:
        super().__init__(f"{label} failed after {attempts} attempt(s)")
        self.label = label
        self.attempts = attempts
