"""Error taxonomy shared by the credential core and the HTTP boundary.

Every failure carries an ``ErrorKind`` so callers branch on the type (or
``exc.kind``) instead of inspecting message text.
"""

import re
from enum import Enum


class ErrorKind(str, Enum):
    MISSING_CREDENTIALS = "missing_credentials"
    MISSING_CLIENT_CREDENTIALS = "missing_client_credentials"
    UPSTREAM_AUTH_EXPIRED = "jihu_auth_expired"
    MALFORMED_UPSTREAM_RESPONSE = "malformed_upstream_response"
    UPSTREAM_FAILURE = "upstream_failure"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


class ProxyError(Exception):
    kind: ErrorKind = ErrorKind.UPSTREAM_FAILURE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MissingCredentials(ProxyError):
    kind = ErrorKind.MISSING_CREDENTIALS


class MissingClientCredentials(ProxyError):
    kind = ErrorKind.MISSING_CLIENT_CREDENTIALS


class UpstreamAuthExpired(ProxyError):
    """The upstream rejected our OAuth material; an operator must re-authorize."""

    kind = ErrorKind.UPSTREAM_AUTH_EXPIRED


class MalformedUpstreamResponse(ProxyError):
    kind = ErrorKind.MALFORMED_UPSTREAM_RESPONSE


class UpstreamFailure(ProxyError):
    kind = ErrorKind.UPSTREAM_FAILURE

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        if status_code is not None:
            message = f"{message} (status {status_code})"
        if body:
            message = f"{message}: {body}"
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AccountError(Exception):
    kind: ErrorKind = ErrorKind.INVALID_REQUEST
    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(AccountError):
    kind = ErrorKind.UNAUTHENTICATED
    status_code = 401


class AuthorizationError(AccountError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403


class ValidationError(AccountError):
    kind = ErrorKind.INVALID_REQUEST
    status_code = 400


class NotFoundError(AccountError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ConflictError(AccountError):
    kind = ErrorKind.CONFLICT
    status_code = 409


SETUP_COMMAND = "coderider-proxy oauth-setup"
_LEGACY_SETUP_COMMANDS = re.compile(r"(python\s+\S*oauth_setup(\.py)?|oauth_setup\.py|npm run oauth-setup)")


def normalize_error_message(message: str) -> str:
    return _LEGACY_SETUP_COMMANDS.sub(SETUP_COMMAND, message)
