"""
Errors raised by the circulation services.

Each carries the HTTP status it is reported with and a message that the
client shows to the user as-is; main.py renders them as {"message": ...}.
"""


class LibraryError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LibraryError):
    status_code = 404


class Conflict(LibraryError):
    # the client treats a duplicate reservation as a plain bad request
    status_code = 400


class Forbidden(LibraryError):
    status_code = 403


class ValidationFailed(LibraryError):
    status_code = 400


class Unavailable(LibraryError):
    status_code = 400


class Internal(LibraryError):
    status_code = 500
