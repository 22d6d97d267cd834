"""
Step-Up Authorization Gate

Decides whether a session may run ordinary operations and, separately,
whether it may run bank operations right now.

Session lifecycle:
    login()                     -> authenticated, mfa_verified False
    verify_login_mfa()          -> mfa_verified True
    verify_bank_operation_mfa() -> bank step-up valid for a short window
    require_bank_operation_mfa() is called before every bank operation

CRITICAL: A failed passkey verification changes NOTHING. The stored
signature counter, the session claims and the enrollment state stay as
they were. The gate re-checks the counter itself rather than trusting
the verifier alone.

DESIGN DECISION: The step-up window is measured against a timestamp
inside the signed token. Expiry is computed at check time, so there is
no background job and nothing to clean up.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select
from werkzeug.security import check_password_hash

from monterico.audit import AuditLogger
from monterico.auth.passkeys import PasskeyVerifier
from monterico.auth.session import SessionSigner
from monterico.config import SessionSettings, get_settings
from monterico.errors import AuthorizationError, NotFoundError, ValidationError
from monterico.models.audit import AuditEventBuilder
from monterico.models.auth import (
    BankMfaStatus,
    CeremonyStart,
    IssuedSession,
    MFAMethodRecord,
    PasskeyUser,
    SessionClaims,
    StoredCredential,
)
from monterico.storage import Database
from monterico.storage.tables import MFAMethodRow, UserRow, utcnow


def _epoch_ms(now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    return int(now.timestamp() * 1000)


def _method_record(row: MFAMethodRow) -> MFAMethodRecord:
    return MFAMethodRecord(
        id=row.id,
        type=row.type,
        name=row.name,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
    )


class StepUpAuthorizationGate:
    """
    Login, passkey enrollment, MFA verification and the bank step-up.

    Usage:
        gate = StepUpAuthorizationGate(database, SessionSigner(), WebAuthnPasskeyVerifier())
        session = await gate.login("ana@example.com", "secret")
        start = await gate.begin_passkey_authentication(session.token)
        session = await gate.verify_login_mfa(start.session.token, browser_response)
    """

    def __init__(
        self,
        database: Database,
        signer: SessionSigner,
        verifier: PasskeyVerifier,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[SessionSettings] = None,
    ):
        self._db = database
        self._signer = signer
        self._verifier = verifier
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().session

    @property
    def bank_mfa_window_ms(self) -> int:
        return self._settings.bank_mfa_validity_minutes * 60 * 1000

    # =========================================================================
    # SESSION
    # =========================================================================

    async def login(self, email: str, password: str) -> IssuedSession:
        """
        Check a password and open a session without MFA.

        Raises:
            AuthorizationError(UNAUTHORIZED): Unknown email or wrong password
        """
        email = (email or "").strip().lower()
        async with self._db.transaction() as session:
            user = (
                await session.execute(select(UserRow).where(UserRow.email == email))
            ).scalar_one_or_none()

        if user is None or not check_password_hash(user.password_hash, password or ""):
            await self._audit.log(AuditEventBuilder.login(None, email, succeeded=False))
            raise AuthorizationError("Invalid email or password")

        await self._audit.log(AuditEventBuilder.login(user.id, email, succeeded=True))
        return self._signer.issue(
            SessionClaims(
                user_id=user.id,
                email=user.email,
                mfa_setup_complete=user.mfa_setup_complete,
                mfa_verified=False,
            )
        )

    def authenticate(self, token: str) -> SessionClaims:
        """Claims of a valid session token."""
        return self._signer.verify(token)

    # =========================================================================
    # PASSKEY ENROLLMENT
    # =========================================================================

    async def begin_passkey_registration(self, token: str) -> CeremonyStart:
        claims = self._signer.verify(token)

        async with self._db.transaction() as session:
            existing = await self._active_methods(session, claims.user_id)

        ceremony = self._verifier.generate_registration_challenge(
            PasskeyUser(user_id=claims.user_id, email=claims.email),
            [m.credential_id for m in existing],
        )
        issued = self._signer.reissue(claims, pending_challenge=ceremony.challenge)
        return CeremonyStart(options=ceremony.options, session=issued)

    async def complete_passkey_registration(
        self,
        token: str,
        response: dict[str, Any],
        device_name: Optional[str] = None,
    ) -> IssuedSession:
        """
        Verify an attestation and store the new passkey.

        Enrollment does not count as an MFA verification of the login.

        Raises:
            ValidationError: No registration in progress, or passkey already stored
            AuthorizationError(MFA_VERIFICATION_FAILED): Attestation rejected
        """
        claims = self._signer.verify(token)
        if not claims.pending_challenge:
            raise ValidationError("No passkey registration in progress")

        result = self._verifier.verify_registration(response, claims.pending_challenge)
        if not result.verified or not result.credential_id or not result.public_key:
            await self._audit.log(
                AuditEventBuilder.mfa_verification_failed(claims.user_id, "registration_rejected")
            )
            raise AuthorizationError(
                "Passkey registration failed",
                AuthorizationError.MFA_VERIFICATION_FAILED,
            )

        async with self._db.transaction() as session:
            duplicate = (
                await session.execute(
                    select(MFAMethodRow.id).where(MFAMethodRow.credential_id == result.credential_id)
                )
            ).scalar_one_or_none()
            if duplicate is not None:
                raise ValidationError("Passkey is already registered")

            method = MFAMethodRow(
                user_id=claims.user_id,
                type="passkey",
                name=(device_name or "Passkey").strip() or "Passkey",
                credential_id=result.credential_id,
                public_key=result.public_key,
                counter=result.counter,
                transports=result.transports,
            )
            session.add(method)

            user = await session.get(UserRow, claims.user_id)
            if user is None:
                raise NotFoundError(f"User {claims.user_id} not found")
            user.mfa_setup_complete = True
            await session.flush()
            method_id = method.id

        await self._audit.log(
            AuditEventBuilder.passkey_registered(claims.user_id, method_id, method.name)
        )
        return self._signer.reissue(
            claims,
            mfa_setup_complete=True,
            pending_challenge=None,
        )

    # =========================================================================
    # PASSKEY VERIFICATION
    # =========================================================================

    async def begin_passkey_authentication(self, token: str) -> CeremonyStart:
        """
        Raises:
            ValidationError: The user has no active passkey
        """
        claims = self._signer.verify(token)

        async with self._db.transaction() as session:
            methods = await self._active_methods(session, claims.user_id)

        if not methods:
            raise ValidationError("MFA enrollment required before authenticating")

        ceremony = self._verifier.generate_authentication_challenge(
            [m.credential_id for m in methods]
        )
        issued = self._signer.reissue(claims, pending_challenge=ceremony.challenge)
        return CeremonyStart(options=ceremony.options, session=issued)

    async def verify_login_mfa(self, token: str, response: dict[str, Any]) -> IssuedSession:
        """Second factor of a login. Sets mfa_verified on success."""
        claims = self._signer.verify(token)
        await self._verify_assertion(claims, response)
        await self._audit.log(AuditEventBuilder.mfa_verified(claims.user_id, step_up=False))
        return self._signer.reissue(claims, mfa_verified=True, pending_challenge=None)

    async def verify_bank_operation_mfa(
        self,
        token: str,
        response: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> IssuedSession:
        """
        Fresh passkey check before bank operations.

        Raises:
            AuthorizationError(MFA_REQUIRED): Login MFA not done yet
            AuthorizationError(MFA_VERIFICATION_FAILED): Assertion rejected
        """
        claims = self._signer.verify(token)
        if not claims.mfa_verified:
            raise AuthorizationError(
                "MFA verification required before bank operations",
                AuthorizationError.MFA_REQUIRED,
            )

        await self._verify_assertion(claims, response)
        await self._audit.log(AuditEventBuilder.mfa_verified(claims.user_id, step_up=True))
        return self._signer.reissue(
            claims,
            bank_operation_mfa_verified_at=_epoch_ms(now),
            pending_challenge=None,
        )

    async def _verify_assertion(self, claims: SessionClaims, response: dict[str, Any]) -> None:
        try:
            await self._check_assertion(claims, response)
        except AuthorizationError as e:
            await self._audit.log(
                AuditEventBuilder.mfa_verification_failed(claims.user_id, e.message)
            )
            raise

    async def _check_assertion(self, claims: SessionClaims, response: dict[str, Any]) -> None:
        if not claims.pending_challenge:
            raise AuthorizationError(
                "No passkey challenge in progress",
                AuthorizationError.MFA_VERIFICATION_FAILED,
            )

        credential_id = response.get("id") if isinstance(response, dict) else None
        if not credential_id:
            raise AuthorizationError(
                "Passkey response has no credential id",
                AuthorizationError.MFA_VERIFICATION_FAILED,
            )

        async with self._db.transaction() as session:
            method = (
                await session.execute(
                    select(MFAMethodRow)
                    .where(
                        MFAMethodRow.user_id == claims.user_id,
                        MFAMethodRow.credential_id == credential_id,
                        MFAMethodRow.is_active.is_(True),
                    )
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if method is None:
                raise AuthorizationError(
                    "Passkey not recognized",
                    AuthorizationError.MFA_VERIFICATION_FAILED,
                )

            stored = StoredCredential(
                credential_id=method.credential_id,
                public_key=method.public_key,
                counter=method.counter,
                transports=method.transports or [],
            )
            result = self._verifier.verify_authentication(
                response, claims.pending_challenge, stored
            )
            if not result.verified:
                raise AuthorizationError(
                    "Passkey verification failed",
                    AuthorizationError.MFA_VERIFICATION_FAILED,
                )
            # Cloned authenticator or replayed assertion
            if stored.counter > 0 and result.new_counter <= stored.counter:
                raise AuthorizationError(
                    "Passkey signature counter did not increase",
                    AuthorizationError.MFA_VERIFICATION_FAILED,
                )

            method.counter = result.new_counter
            method.last_used_at = utcnow()

    # =========================================================================
    # BANK STEP-UP
    # =========================================================================

    async def require_bank_operation_mfa(
        self,
        token: str,
        now: Optional[datetime] = None,
    ) -> SessionClaims:
        """
        Guard for every bank operation.

        Raises:
            AuthorizationError(BANK_MFA_REQUIRED): No bank step-up in this session
            AuthorizationError(BANK_MFA_EXPIRED): Step-up older than the window
        """
        claims = self._signer.verify(token)
        verified_at = claims.bank_operation_mfa_verified_at

        if verified_at is None:
            await self._audit.log_bank_mfa_denied(
                claims.user_id, AuthorizationError.BANK_MFA_REQUIRED
            )
            raise AuthorizationError(
                "Bank operations require a fresh passkey verification",
                AuthorizationError.BANK_MFA_REQUIRED,
            )

        if _epoch_ms(now) - verified_at >= self.bank_mfa_window_ms:
            await self._audit.log_bank_mfa_denied(
                claims.user_id, AuthorizationError.BANK_MFA_EXPIRED
            )
            raise AuthorizationError(
                "Bank operation verification expired",
                AuthorizationError.BANK_MFA_EXPIRED,
            )

        return claims

    def bank_mfa_status(self, token: str, now: Optional[datetime] = None) -> BankMfaStatus:
        claims = self._signer.verify(token)
        verified_at = claims.bank_operation_mfa_verified_at
        if verified_at is None:
            return BankMfaStatus(verified=False, required=True)

        expires_at = verified_at + self.bank_mfa_window_ms
        remaining = expires_at - _epoch_ms(now)
        expired = remaining <= 0
        return BankMfaStatus(
            verified=not expired,
            required=expired,
            expired=expired,
            expires_at=expires_at,
            remaining_ms=max(remaining, 0),
        )

    # =========================================================================
    # MFA METHODS
    # =========================================================================

    async def list_mfa_methods(self, token: str) -> list[MFAMethodRecord]:
        claims = self._signer.verify(token)
        async with self._db.transaction() as session:
            methods = await self._active_methods(session, claims.user_id)
            return [_method_record(m) for m in methods]

    async def delete_mfa_method(self, token: str, method_id: str) -> None:
        """
        Deactivate one of the caller's passkeys.

        Raises:
            NotFoundError: Unknown method or one belonging to another user
            ValidationError: It is the last active method
        """
        claims = self._signer.verify(token)

        async with self._db.transaction() as session:
            method = (
                await session.execute(
                    select(MFAMethodRow)
                    .where(
                        MFAMethodRow.id == method_id,
                        MFAMethodRow.user_id == claims.user_id,
                        MFAMethodRow.is_active.is_(True),
                    )
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if method is None:
                raise NotFoundError(f"MFA method {method_id} not found")

            active_count = (
                await session.execute(
                    select(func.count(MFAMethodRow.id)).where(
                        MFAMethodRow.user_id == claims.user_id,
                        MFAMethodRow.is_active.is_(True),
                    )
                )
            ).scalar_one()
            if active_count <= 1:
                raise ValidationError("Cannot remove the last MFA method")

            method.is_active = False

        await self._audit.log(AuditEventBuilder.mfa_method_removed(claims.user_id, method_id))

    @staticmethod
    async def _active_methods(session, user_id: str) -> list[MFAMethodRow]:
        result = await session.execute(
            select(MFAMethodRow)
            .where(MFAMethodRow.user_id == user_id, MFAMethodRow.is_active.is_(True))
            .order_by(MFAMethodRow.created_at, MFAMethodRow.id)
        )
        return list(result.scalars())

