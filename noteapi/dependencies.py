"""Shared dependencies: structured logger, error taxonomy and request providers."""

import json
import logging
import secrets
from typing import TYPE_CHECKING, Any

from fastapi import Header, HTTPException, Request, status

from noteapi.config import get_settings
from noteapi.models import ErrorDetail, ErrorResponse

if TYPE_CHECKING:
    from noteapi.graph.tools import LinkGraph
    from noteapi.notes.store import NoteStore
    from noteapi.search.index import IndexClient
    from noteapi.search.reindex import ReindexCoordinator
    from noteapi.watcher.service import ChangeWatcher

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        data: dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        data.update({k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS})
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_logging() -> logging.Logger:
    """Configure and return the application logger."""
    settings = get_settings()
    logger = logging.getLogger("noteapi")
    logger.setLevel(getattr(logging, settings.effective_log_level, logging.INFO))
    logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


logger = setup_logging()


# =============================================================================
# Error Taxonomy
# =============================================================================


class VaultError(Exception):
    """Base exception for vault operations."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "vault_error"
    error_type = "server_error"


class VaultSecurityError(VaultError):
    """Raised when a path resolves outside the vault root."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "path_traversal"
    error_type = "invalid_request_error"


class NotMarkdownError(VaultError):
    """Raised when a note path does not carry a .md extension."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "not_markdown"
    error_type = "invalid_request_error"


class InvalidInputError(VaultError):
    """Raised when a request is well-typed but semantically malformed."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_input"
    error_type = "invalid_request_error"


class VaultNotFoundError(VaultError):
    """Raised when a file is not found in the vault."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    error_type = "invalid_request_error"


class NoteExistsError(VaultError):
    """Raised when a create or move targets a path that is already taken."""

    status_code = status.HTTP_409_CONFLICT
    code = "exists"
    error_type = "invalid_request_error"


class PreconditionMissingError(VaultError):
    """Raised when a mutating call arrives without an If-Match token."""

    status_code = status.HTTP_412_PRECONDITION_FAILED
    code = "precondition_missing"
    error_type = "invalid_request_error"


class PreconditionFailedError(VaultError):
    """Raised when the If-Match token differs from the note's current ETag."""

    status_code = status.HTTP_412_PRECONDITION_FAILED
    code = "precondition_mismatch"
    error_type = "invalid_request_error"


class PayloadTooLargeError(VaultError):
    """Raised when a request body exceeds the configured size limit."""

    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    code = "payload_too_large"
    error_type = "invalid_request_error"


class RateLimitedError(VaultError):
    """Raised when a client exceeds the request rate limit."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "rate_limited"
    error_type = "rate_limit_error"


class SearchIndexError(VaultError):
    """Base exception for search engine failures."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "index_error"


class IndexUnavailableError(SearchIndexError):
    """Raised when the search engine cannot be reached or is disabled."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "index_unavailable"


class IndexWriteError(SearchIndexError):
    """Raised when the search engine rejects a write or its task fails."""

    code = "index_write_failed"


class ReindexInFlightError(SearchIndexError):
    """Raised when a full reindex is requested while one is running."""

    status_code = status.HTTP_409_CONFLICT
    code = "reindex_in_flight"


# =============================================================================
# Request Providers
# =============================================================================


async def require_api_key(
    request: Request, authorization: str | None = Header(default=None)
) -> None:
    """Reject requests whose bearer token does not match NOTEAPI_KEY.

    An empty configured key locks the API rather than opening it.
    """
    expected = request.app.state.settings.noteapi_key
    supplied = (authorization or "").strip()
    if supplied[:7].lower() == "bearer ":
        supplied = supplied[7:].strip()
    if not expected or not supplied or not secrets.compare_digest(supplied, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=ErrorResponse(
                error=ErrorDetail(
                    message="Unauthorized",
                    type="authentication_error",
                    code="unauthorized",
                )
            ).model_dump(),
        )


def get_note_store(request: Request) -> "NoteStore":
    """FastAPI dependency provider for the NoteStore."""
    return request.app.state.store


def get_index_client(request: Request) -> "IndexClient":
    """FastAPI dependency provider for the search index client."""
    return request.app.state.index


def get_reindex_coordinator(request: Request) -> "ReindexCoordinator":
    """FastAPI dependency provider for the ReindexCoordinator."""
    return request.app.state.reindexer


def get_change_watcher(request: Request) -> "ChangeWatcher":
    """FastAPI dependency provider for the ChangeWatcher."""
    return request.app.state.watcher


def get_link_graph(request: Request) -> "LinkGraph":
    """FastAPI dependency provider for the link graph."""
    return request.app.state.graph
