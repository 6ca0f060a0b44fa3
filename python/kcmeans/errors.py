"""Exception types raised by kcmeans."""


class KCMeansError(ValueError):
    """Base class for errors raised by kcmeans."""


class InvalidArgumentError(KCMeansError):
    """Invalid input: bad K, empty data, bad column index, length mismatch."""


class SingularDesignError(KCMeansError):
    """The linear projection could not be computed, even with a generalized inverse."""
