from __future__ import annotations


class AlderError(Exception):
    """Base class for errors raised by the weighted-LD core."""


class ConfigurationError(AlderError):
    """Fatal: the run cannot start with the given parameters or data."""


class InsufficientDataError(AlderError):
    """Non-fatal: a specific curve, test or bound cannot be computed."""


class CurveFitError(AlderError):
    """Raised when a decay curve cannot be fitted ("no curve")."""


class ExtentRefusedError(AlderError):
    """Correlated LD extends past the safety ceiling and no override was given."""

    def __init__(self, label: str, detected: float, ceiling: float) -> None:
        self.label = label
        self.detected = detected
        self.ceiling = ceiling
        super().__init__(
            f"{label}: correlated LD detected out to {detected:.2f} cM "
            f"(> {ceiling:.2f} cM); refusing to fit. Set mindis to override."
        )
