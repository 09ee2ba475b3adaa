"""
Error taxonomy for the access-control integration layer.

Auth and sync errors are raised to the immediate caller; the polling loop
catches everything it can see and keeps running. Batch operations (multi-door
grants) report per-door outcomes instead of raising one opaque failure.
"""

from typing import Optional


class IntegrationError(Exception):
    """Base class for every error raised by the integration layer."""


# ── Credentials ──────────────────────────────────────────────────────────────
class CredentialError(IntegrationError):
    pass


class MissingCredentialsError(CredentialError):
    def __init__(self, branch_id: str, reason: str = "missing credentials"):
        self.branch_id = branch_id
        self.reason = reason
        super().__init__(f"Branch {branch_id}: {reason}")


class CredentialValidationError(CredentialError):
    def __init__(self, fields: list[str]):
        self.fields = fields
        super().__init__(f"Required credential fields are empty: {', '.join(fields)}")


# ── Provider transport ───────────────────────────────────────────────────────
class ProviderError(IntegrationError):
    """The provider answered with an error envelope or an error HTTP status."""

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        self.code = code
        self.status = status
        self.message = message
        super().__init__(message if code is None else f"{message} (code={code})")


class TokenExpiredError(ProviderError):
    """The provider rejected the bearer token (HTTP 401)."""


class ProviderUnavailableError(ProviderError):
    """Network failure or timeout: the provider could not be reached."""


# ── Auth ─────────────────────────────────────────────────────────────────────
class AuthError(IntegrationError):
    def __init__(self, branch_id: str, message: str):
        self.branch_id = branch_id
        self.message = message
        super().__init__(f"Branch {branch_id}: {message}")


class InvalidCredentialsError(AuthError):
    pass


class AuthUnavailableError(AuthError):
    pass


# ── Device sync ──────────────────────────────────────────────────────────────
class SyncError(IntegrationError):
    def __init__(self, branch_id: str, message: str):
        self.branch_id = branch_id
        self.reason = message
        super().__init__(f"Device sync failed for branch {branch_id}: {message}")


class ProviderUnreachableError(SyncError):
    pass


class PartialDataError(SyncError):
    def __init__(self, branch_id: str, message: str, failed_devices: Optional[list[str]] = None):
        self.failed_devices = failed_devices or []
        super().__init__(branch_id, message)


# ── Person / privilege mapping ───────────────────────────────────────────────
class MappingError(IntegrationError):
    pass


class PersonCreateFailedError(MappingError):
    def __init__(self, member_id: str, branch_id: str, reason: str):
        self.member_id = member_id
        self.branch_id = branch_id
        self.reason = reason
        super().__init__(f"Could not create provider person for member {member_id} "
                         f"in branch {branch_id}: {reason}")


class PrivilegeAssignFailedError(MappingError):
    def __init__(self, member_id: str, failed_doors: dict):
        self.member_id = member_id
        self.failed_doors = failed_doors      # {door_id: reason}
        super().__init__(f"Privilege assignment failed for member {member_id} "
                         f"on doors {sorted(failed_doors)}")


# ── Ingestion ────────────────────────────────────────────────────────────────
class IngestionError(IntegrationError):
    pass


class PollFailedError(IngestionError):
    def __init__(self, branch_id: str, offset: Optional[int], reason: str):
        self.branch_id = branch_id
        self.offset = offset
        self.reason = reason
        super().__init__(f"Poll failed for branch {branch_id} after offset {offset}: {reason}")


class UnknownEventShapeError(IngestionError, ValueError):
    """A provider event payload did not match any known event layout."""
