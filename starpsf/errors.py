"""
Failure taxonomy of the star finder.

Every failure is local to one candidate or one star: the public fitting
and photometry functions catch these and return None.
"""


class StarPSFError(Exception):
    """Base class for per-candidate failures."""


class InfeasibleProblem(StarPSFError):
    """Fewer pixels than free parameters."""


class SolverDivergence(StarPSFError):
    """The iterative solver failed or produced non-finite parameters."""


class ImplausibleResult(StarPSFError):
    """The fit converged but is not a plausible star."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PhotometryError(StarPSFError):
    pass


class DegenerateAperture(PhotometryError):
    """Aperture too large for the sky annulus, or empty."""


class InsufficientSkySample(PhotometryError):
    """Not enough valid pixels in the sky annulus."""
