"""
auth/errors.py -- Error taxonomy for the third-party login flow.

Every error here is terminal for the current flow: nothing is retried
automatically, and the only recovery path is the user starting a new login.

Each class carries:
  code           -- stable machine-readable identifier. The web layer puts it
                    in ?error=<code>; the API puts it in the error envelope.
  status_code    -- HTTP status used by the API exception handler.
  public_message -- the ONLY text a client ever sees. The exception message
                    itself (str(exc)) may contain provider details and is
                    written to server logs only.

correlation_id is attached by LoginCoordinator.callback() so a user-reported
failure can be matched with the server-side log line.

Layer rule: stdlib only.
"""

from __future__ import annotations


class OAuthFlowError(Exception):
    code = "oauth_failed"
    status_code = 400
    public_message = "Sign-in failed. Please try again."

    def __init__(self, message: str = "", correlation_id: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.correlation_id = correlation_id


class InvalidState(OAuthFlowError):
    """State token missing, expired, already consumed, or issued for another provider."""

    code = "invalid_state"
    public_message = "Your sign-in attempt expired or was already used. Please try again."


class DuplicateToken(OAuthFlowError):
    """A freshly generated state token collided with a pending one."""

    code = "duplicate_token"
    status_code = 500


class ProviderDenied(OAuthFlowError):
    """The provider redirected back with an error (user cancelled, scope refused)."""

    code = "provider_denied"
    public_message = "Sign-in was cancelled at the provider."

    def __init__(self, error: str, description: str | None = None, correlation_id: str | None = None) -> None:
        detail = f"{error}: {description}" if description else error
        super().__init__(f"Provider denied authorization ({detail})", correlation_id)
        self.error = error
        self.description = description


class ProviderError(OAuthFlowError):
    """Token exchange or identity fetch failed.

    kind:
      "network"  -- timeout or transport failure talking to the provider.
      "rejected" -- the provider answered, but with an error or an unusable body.
    """

    code = "provider_error"
    status_code = 502
    public_message = "The sign-in provider could not be reached or rejected the request."

    NETWORK = "network"
    REJECTED = "rejected"

    def __init__(
        self,
        kind: str,
        error_code: str | None = None,
        message: str = "",
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(message or f"Provider {kind} error ({error_code or 'unknown'})", correlation_id)
        self.kind = kind
        self.error_code = error_code

    @classmethod
    def network(cls, message: str) -> ProviderError:
        return cls(cls.NETWORK, "network", message)

    @classmethod
    def rejected(cls, error_code: str, message: str = "") -> ProviderError:
        return cls(cls.REJECTED, error_code, message)


class Conflict(OAuthFlowError):
    """The (provider, provider_user_id) pair is linked to a different user."""

    code = "conflict"
    status_code = 409
    public_message = "This account is already linked to another user."


class AmbiguousAccount(OAuthFlowError):
    """An existing user already owns the identity's email through another method."""

    code = "ambiguous_account"
    status_code = 409
    public_message = (
        "An account with this email already exists. Sign in with your existing method and link this provider."
    )


class NotFound(OAuthFlowError):
    code = "not_found"
    status_code = 404
    public_message = "Linked account not found."


class LastCredential(OAuthFlowError):
    """Unlinking would leave the user without any way to sign in."""

    code = "last_credential"
    status_code = 409
    public_message = "You cannot unlink your only sign-in method."


class AccountDisabled(OAuthFlowError):
    code = "account_disabled"
    status_code = 403
    public_message = "Your account has been disabled. Contact an admin."


class UnknownProvider(OAuthFlowError):
    """Provider name is not recognised or not configured."""

    code = "unknown_provider"
    status_code = 404
    public_message = "This sign-in provider is not available."
