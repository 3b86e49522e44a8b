"""Exception hierarchy shared by the vault, providers, scheduler and printer."""

from __future__ import annotations


class MailPrintError(Exception):
    """Base class for all mailprint failures."""


class AuthError(MailPrintError):
    """Credentials could not be obtained or refreshed."""

    def __init__(self, message: str, remediation: str | None = None) -> None:
        super().__init__(message)
        self.remediation = remediation


class ProviderUnavailable(MailPrintError):
    """The backend or its token endpoint could not be reached; retry later."""


class AuthCancelled(AuthError):
    """The user aborted the interactive authentication."""


class AuthTimeout(AuthError):
    """No authorization code arrived before the deadline."""


class DecryptError(MailPrintError):
    """The at-rest token could not be decrypted."""


class TokenNotFound(MailPrintError):
    """No token has been persisted yet."""


class FetchError(MailPrintError):
    """Listing or retrieving messages from the backend failed.

    ``partial`` holds whatever was extracted before the failure, so files
    from messages already deleted on the backend are not lost.
    """

    def __init__(self, message: str, partial=None) -> None:
        super().__init__(message)
        self.partial = partial


class ExtractionError(MailPrintError):
    """A single attachment part could not be materialized."""


class PrintError(MailPrintError):
    """The print dispatch reported a failure."""

    def __init__(self, message: str, printer: str, hint: str) -> None:
        super().__init__(message)
        self.printer = printer
        self.hint = hint
