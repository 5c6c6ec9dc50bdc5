"""
Service errors raised by the access-control, lifecycle and billing code.

main.py turns any ServiceError into a JSON response with the class status code.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class Unauthenticated(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    status_code = 404


class InvalidInput(ServiceError):
    status_code = 400


class InvalidState(ServiceError):
    status_code = 400


class Conflict(ServiceError):
    status_code = 400


class Unavailable(ServiceError):
    status_code = 400


class LimitReached(ServiceError):
    status_code = 400
