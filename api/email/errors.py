"""
Error types raised by the email module.

Every caller-facing error derives from EmailError so the tool surface can
report failures in one structured shape.
"""

from typing import Optional


class EmailError(Exception):
    """Base class for email errors.

    Carries the account and operation the error happened in, when known, so
    that a single-account failure can be diagnosed from its message alone.
    """

    def __init__(
        self,
        message: str,
        account_id: Optional[str] = None,
        operation: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.account_id = account_id
        self.operation = operation

    def with_context(self, account_id: str, operation: str) -> 'EmailError':
        """Attach account/operation context without overwriting existing context."""
        if self.account_id is None:
            self.account_id = account_id
        if self.operation is None:
            self.operation = operation
        return self

    def __str__(self) -> str:
        if self.operation and self.account_id:
            return f"{self.operation} failed for account '{self.account_id}': {self.message}"
        if self.account_id:
            return f"Account '{self.account_id}': {self.message}"
        return self.message


class ConfigValidationError(EmailError):
    """The account manifest is invalid. Fatal at load."""


class PlaintextSecretError(ConfigValidationError):
    """A sensitive field holds a literal value instead of a ${VAR} placeholder."""

    def __init__(self, account_id: str, field: str):
        super().__init__(
            f"SECURITY ERROR: plaintext secret in field '{field}'. "
            f"Use environment variable syntax \"${{ENV_VAR_NAME}}\" instead of hardcoding secrets.",
            account_id=account_id
        )
        self.field = field


class UnresolvedSecretError(ConfigValidationError):
    """A sensitive field resolved to an empty value after substitution."""

    def __init__(self, account_id: str, field: str):
        super().__init__(
            f"required secret '{field}' is empty. Make sure the environment variable is set.",
            account_id=account_id
        )
        self.field = field


class ProviderConnectionError(EmailError):
    """The adapter could not establish a session with its backend."""


class AccountNotFound(EmailError):
    """No connected account has the requested identity."""


class NoDefaultAccount(EmailError):
    """No account was given and the registry has no default."""


class AuthError(EmailError):
    """Credentials were rejected, even after the adapter's own refresh."""


class UnsupportedOperation(EmailError):
    """The provider does not implement the requested capability."""


class BackendError(EmailError):
    """Opaque per-call failure reported by a provider."""


class OperationTimeout(BackendError):
    """A provider call did not finish within the configured timeout."""
