"""Exception types raised by the matching engine."""

from typing import Iterable, Optional


class MatchingError(Exception):
    """Base class for all matching engine errors."""


class ExtractionFailure(MatchingError):
    """A single feature extractor produced no usable signal.

    Non-fatal: the builder records the signal as absent and carries on.
    """

    def __init__(self, extractor: str, message: str):
        super().__init__(f"{extractor}: {message}")
        self.extractor = extractor


class FingerprintBuildFailure(MatchingError):
    """Neither the hash triplet nor the embedding could be computed."""


class FingerprintNotFound(MatchingError):
    pass


class ScoringRefused(MatchingError):
    """A pair cannot be scored (incomplete fingerprint, no shared signal)."""


class ValidationError(MatchingError):
    """A request was rejected before any state changed."""

    def __init__(self, message: str, valid_values: Optional[Iterable[str]] = None):
        self.valid_values = sorted(valid_values) if valid_values else []
        if self.valid_values:
            message = f"{message} (valid: {', '.join(self.valid_values)})"
        super().__init__(message)


class PermissionDenied(ValidationError):
    """The user does not own either case of the match."""


class InsufficientTrainingData(ValidationError):
    pass


class MatchNotFound(MatchingError):
    pass


class WeightProfileNotFound(MatchingError, LookupError):
    """No active profile, stored or built in, under the requested name."""


class WeightPromotionConflict(MatchingError):
    """A promotion lost the race against a newer active version."""
