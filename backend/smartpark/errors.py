class ParkingError(Exception):
    """Base error; `status_code` is the HTTP status used when it reaches the API."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ParkingError):
    status_code = 404


class InvalidInput(ParkingError):
    status_code = 400


class Unauthorized(ParkingError):
    status_code = 401


class Forbidden(Unauthorized):
    status_code = 403


class Conflict(ParkingError):
    status_code = 409


class StaleSlotError(Conflict):
    """The slot changed between read and conditional write."""
