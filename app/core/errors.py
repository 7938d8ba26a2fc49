"""
Error kinds raised across the auth boundary.

Every kind is an `HTTPException`, so services can raise them exactly
where they used to raise bare HTTP errors and FastAPI renders them
without extra wiring.  `code` is the stable machine-readable name the
client and the session coordinator switch on.

Policy:
- Authentication-boundary errors (credentials, username, token,
  already-logged-in, concurrent-session) end the attempted operation.
- AccessRevoked / TokenExpired / TokenDeactivated clear the local
  session and redirect.
- StoreUnavailable is surfaced during sign-in / sign-up but swallowed
  while re-validating an existing session.
"""

from fastapi import HTTPException, status


class AuthError(HTTPException):
    code: str = "AUTH_ERROR"
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Authentication error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(
            status_code=type(self).status_code,
            detail=detail or self.default_detail,
        )

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.detail}


# ── Sign-in / sign-up ────────────────────────────────────────────────
class InvalidCredentials(AuthError):
    code = "INVALID_CREDENTIALS"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Invalid username or password"


class UsernameTaken(AuthError):
    code = "USERNAME_TAKEN"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Username already exists"


class InvalidToken(AuthError):
    code = "INVALID_TOKEN"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid token"


class TokenAlreadyUsed(AuthError):
    code = "TOKEN_ALREADY_USED"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Token has already been used"


class AlreadyLoggedInElsewhere(AuthError):
    code = "ALREADY_LOGGED_IN_ELSEWHERE"
    status_code = status.HTTP_409_CONFLICT
    default_detail = (
        "You are already logged in from another browser. "
        "Please sign out there first."
    )


class ConcurrentSessionConflict(AuthError):
    code = "CONCURRENT_SESSION_CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Another session was created simultaneously"


# ── Session check ────────────────────────────────────────────────────
class AccessRevoked(AuthError):
    code = "ACCESS_REVOKED"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "User not found or access revoked"


class TokenExpired(AuthError):
    code = "TOKEN_EXPIRED"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Your access token has expired. Please contact admin for renewal."


class TokenDeactivated(AuthError):
    code = "TOKEN_DEACTIVATED"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Your token has been deactivated. Please contact admin to reactivate."


# ── Infrastructure ───────────────────────────────────────────────────
class StoreUnavailable(AuthError):
    code = "STORE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Credential store is temporarily unavailable"


# ── Admin console ────────────────────────────────────────────────────
class NotFound(AuthError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class AdminRequired(AuthError):
    code = "ADMIN_REQUIRED"
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Admin session required"


# Errors that end the local session when they come out of a check.
SESSION_ENDING_ERRORS = (AccessRevoked, TokenExpired, TokenDeactivated)
