class NotFound(Exception):
    """Raised when a record id does not exist in a collection."""

    def __init__(self, collection: str, record_id):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection} record {record_id} not found")


class TransientIOFailure(Exception):
    """Raised when the backing store cannot be reached or written."""


class ValidationFailure(Exception):
    """Raised when a request would break a record invariant."""


class RebuildError(Exception):
    """Raised when the registration summary cannot read its source collections."""
