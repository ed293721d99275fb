"""Exceptions raised by the replication worker."""


class SyncError(Exception):
    """Base exception for replication errors."""

    pass


class ConfigurationError(SyncError):
    """Raised for missing credentials or an unreadable/invalid config file."""

    pass


class TableNotFoundError(SyncError):
    """Raised when a table does not exist in the source."""

    pass


class ColumnNotFoundError(SyncError):
    """Raised when a probed column does not exist on a table."""

    pass


class MissingPrimaryKeyError(SyncError):
    """Raised when a row does not carry every primary key field of its table."""

    def __init__(self, table: str, missing: list[str]):
        self.table = table
        self.missing = missing
        super().__init__(
            f"Row for {table} is missing primary key field(s): {', '.join(missing)}"
        )


class ChannelError(SyncError):
    """Raised when a realtime channel fails."""

    pass


class ChannelTimeoutError(ChannelError):
    """Raised when a realtime channel stops answering."""

    pass


class ChannelClosedError(ChannelError):
    """Raised when a realtime channel has been closed."""

    pass
