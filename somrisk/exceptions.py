
class ZonationError(Exception):
    """Base class for all errors raised by somrisk."""


class InvalidInputError(ZonationError, ValueError):
    """Degenerate, empty or dimension-mismatched input to a fit or predict call."""


class InsufficientDataError(InvalidInputError):
    """Not enough (non-missing) samples to fit scaling or select pseudo-absences."""


class SchemaMismatchError(ZonationError, ValueError):
    """Predictor names or their order differ between training and a later feature batch."""


__all__ = ['ZonationError', 'InvalidInputError', 'InsufficientDataError', 'SchemaMismatchError']
