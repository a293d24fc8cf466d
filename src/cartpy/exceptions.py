"""Errors raised by cartpy."""


class InvariantViolationError(RuntimeError):
    """Input data broke a contract the training engine relies on.

    Raised for unordered or repeated feature ids inside one example, an
    example observed twice for the same feature, or an index partition that
    does not match the column being split.  These are never recoverable: the
    upstream dataset is corrupt and tree construction is aborted.
    """
