"""Error taxonomy for the training log core.

Dangling references are deliberately absent: aggregations drop records whose
foreign key target is missing instead of failing.
"""


class TrainingLogError(Exception):
    """Base class for errors surfaced by the store and the snapshot codec."""


class StorageUnavailable(TrainingLogError):
    """The database could not be opened or read."""


class TransactionAborted(TrainingLogError):
    """A write transaction failed; none of its effects were kept."""


class ValidationError(TrainingLogError):
    """A backup document is malformed and was refused before any write."""
