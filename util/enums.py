# util/enums.py
from enum import Enum
from typing import NamedTuple
from fastapi import status


class Color(str, Enum):
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    BOLD = "\033[1m"

    def __str__(self):
        return self.value


class Environment(str, Enum):
    DEV = "dev"
    PROD = "prod"


class StorageBackend(str, Enum):
    DRIVE = "drive"
    LOCAL = "local"


class ErrorInfo(NamedTuple):
    code: str
    message: str
    http_status: int


class ErrorMessage(Enum):
    INVALID_SOURCE_URL = ErrorInfo(
        "invalid_source_url",
        "Invalid YouTube URL",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
    )
    INVALID_REQUEST = ErrorInfo(
        "invalid_request",
        "Request body is missing or malformed",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
    )
    AUTH_REQUIRED = ErrorInfo(
        "auth_required",
        "Invalid token. Please re-authenticate.",
        status.HTTP_401_UNAUTHORIZED,
    )
    NOT_FOUND = ErrorInfo("not_found", "Resource not found", status.HTTP_404_NOT_FOUND)
    RETRY_NOT_ALLOWED = ErrorInfo(
        "retry_not_allowed",
        "Only failed jobs can be retried",
        status.HTTP_409_CONFLICT,
    )
    ACCESS_DENIED = ErrorInfo(
        "access_denied", "Access denied", status.HTTP_403_FORBIDDEN
    )
    RANGE_NOT_SATISFIABLE = ErrorInfo(
        "range_not_satisfiable",
        "Requested range not satisfiable",
        status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
    )
    STORAGE_UNAVAILABLE = ErrorInfo(
        "storage_unavailable",
        "Storage is temporarily unavailable",
        status.HTTP_502_BAD_GATEWAY,
    )
