"""Exception hierarchy for the Latent Edge engine.

Only :class:`UnsupportedSportError` is fatal on the simulation path.  Every
other error is raised by training / update code and handled by the caller.
"""


class LatentEdgeError(Exception):
    """Base class for all engine errors."""


class InvalidDistributionError(LatentEdgeError, ValueError):
    """A transition-label vector failed the sum / bounds validator.

    Signals upstream data corruption; callers must not coerce the vector
    silently.
    """


class InvalidPosteriorError(LatentEdgeError, ValueError):
    """A team posterior has the wrong length, non-finite values, or
    uncertainty outside the configured bounds."""


class NoTrainingDataError(LatentEdgeError):
    """A training batch produced zero usable samples."""


class UnsupportedSportError(LatentEdgeError, ValueError):
    """The requested sport has no configuration."""


class ModelIntegrityError(LatentEdgeError):
    """Frozen encoder weights are missing, unfinished, or were modified."""
