"""
Authentication Models for Monterico

The session is a signed token. Its claims are the ONLY place the
MFA state of a login lives: nothing about it is kept in server memory.

CRITICAL: Claims are always produced by the server from verified state.
A client can present a token but can never add or change a claim.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class SessionClaims(BaseModel):
    """
    The state machine carried by a session token.

    Unauthenticated        -> no token
    Authenticated          -> mfa_verified False
    Authenticated + MFA    -> mfa_verified True
    bank_operation_mfa_verified_at is an independent, expiring flag that
    is only ever set once mfa_verified is True.
    """

    user_id: str
    email: str
    mfa_setup_complete: bool = False
    mfa_verified: bool = False
    bank_operation_mfa_verified_at: Optional[int] = Field(
        default=None,
        description="Epoch milliseconds of the last bank step-up",
    )
    pending_challenge: Optional[str] = Field(
        default=None,
        description="WebAuthn challenge issued for the ceremony in progress",
    )


class PasskeyUser(BaseModel):
    """Who a registration ceremony is for."""

    user_id: str
    email: str


class StoredCredential(BaseModel):
    """A registered passkey as the verifier needs it."""

    credential_id: str  # base64url
    public_key: str     # base64url
    counter: int = Field(default=0, ge=0)
    transports: list[str] = Field(default_factory=list)


class CeremonyOptions(BaseModel):
    """Options handed to the browser plus the challenge they embed."""

    options: dict[str, Any]
    challenge: str


class VerifiedRegistration(BaseModel):
    verified: bool
    credential_id: Optional[str] = None
    public_key: Optional[str] = None
    counter: int = 0
    transports: list[str] = Field(default_factory=list)


class VerifiedAuthentication(BaseModel):
    verified: bool
    credential_id: Optional[str] = None
    new_counter: int = 0


class MFAMethodRecord(BaseModel):
    id: str
    type: str
    name: str
    created_at: datetime
    last_used_at: Optional[datetime] = None


class BankMfaStatus(BaseModel):
    """Whether bank operations are currently authorized for a session."""

    verified: bool
    required: bool
    expired: bool = False
    expires_at: Optional[int] = None
    remaining_ms: Optional[int] = None


class IssuedSession(BaseModel):
    """A freshly signed token and the claims inside it."""

    token: str
    claims: SessionClaims


class CeremonyStart(BaseModel):
    """
    Options for the browser plus the re-issued session that now carries
    the challenge. The client must present this token to finish.
    """

    options: dict[str, Any]
    session: IssuedSession
