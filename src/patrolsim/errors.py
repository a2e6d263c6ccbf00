"""Exception types raised at the package's programmer-facing seams.

Core operations absorb failures into return values and logs; these are only
raised by registries and helpers whose callers are expected to guard them.
"""


class PatrolsimError(Exception):
    """Base class for patrolsim errors."""


class UnknownOutcomeError(PatrolsimError):
    """Raised when a weighted draw has no category with positive weight."""


class OracleError(PatrolsimError):
    """Raised by the external decision oracle client on transport or parse failure."""
