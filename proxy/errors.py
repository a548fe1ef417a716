from typing import Any, Dict, Optional


class APIError(Exception):
    """Base for every error that reaches the HTTP layer with a stable code."""

    code = -1000
    status_code = 500

    def __init__(self, message: str = "", *, code: Optional[int] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "data": None}


class RequestParamsInvalid(APIError):
    code = -2000
    status_code = 400


class UpstreamRequestError(APIError):
    code = -2001
    status_code = 502


class UpstreamAuthError(APIError):
    code = -2002
    status_code = 401


class FileValidationError(APIError):
    status_code = 400

    FILE_URL_INVALID = -2003
    FILE_EXCEEDS_SIZE = -2004

    code = FILE_URL_INVALID


class TransportError(APIError):
    code = -2005
    status_code = 502


class UpstreamProtocolError(APIError):
    code = -2006
    status_code = 502


class SynthesisTimeoutError(APIError, TimeoutError):
    code = -2007
    status_code = 504


class SynthesisEmptyError(APIError):
    code = -2008
    status_code = 502


class SynthesisDownloadError(APIError):
    code = -2009
    status_code = 502


# Errors the orchestrator retries transparently; everything else surfaces immediately.
RETRYABLE_ERRORS = (TransportError, UpstreamProtocolError)
