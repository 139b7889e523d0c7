# app/errors.py
from typing import Optional


class Pm25Error(Exception):
    """Base class for errors raised by the PM2.5 service."""


class UpstreamError(Pm25Error):
    """Hazemon could not give a usable answer. Callers fall back to the store."""


class UpstreamUnavailable(UpstreamError):
    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class UpstreamEmptyResult(UpstreamError):
    pass


class InvalidRequest(Pm25Error):
    status_code = 400

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint


class Unauthorized(InvalidRequest):
    status_code = 401
