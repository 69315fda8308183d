class QueueError(Exception):
    """Base class for queue transport failures."""


class QueueUnavailableError(QueueError):
    """The queue backend could not be reached."""


class MessageNotFoundError(QueueError):
    def __init__(self, message_id: str):
        super().__init__(f"message {message_id} not found")
        self.message_id = message_id


class PopReceiptMismatchError(QueueError):
    """Raised when a pop receipt no longer matches the message.

    The message has been received again since that receipt was issued, so
    another consumer now holds the lease.
    """

    def __init__(self, message_id: str):
        super().__init__(f"pop receipt for message {message_id} is stale")
        self.message_id = message_id


class StorageError(Exception):
    """Base class for blob storage failures."""


class BlobNotFoundError(StorageError):
    def __init__(self, name: str):
        super().__init__(f"blob {name} not found")
        self.name = name


class ResultDecodeError(StorageError):
    """A stored batch result exists but cannot be decoded."""
