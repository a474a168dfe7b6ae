class GeoClockError(RuntimeError):
    pass


class StorageError(GeoClockError):
    """Local action store is unavailable or corrupted."""


class NetworkError(GeoClockError):
    """The remote API could not be reached (connection, timeout, 5xx)."""


class ServerRejection(GeoClockError):
    """The remote API was reached and refused the request."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class OperationTimeoutError(GeoClockError, TimeoutError):
    pass


class LocationPermissionError(GeoClockError):
    pass


class InvalidActionError(GeoClockError, ValueError):
    pass
