"""
Tests for login, passkey enrollment and the bank step-up gate.

Passkey crypto is faked (see conftest.FakePasskeyVerifier); what is under
test here is the gate's own bookkeeping: challenges carried in the token,
counter checks, enrollment state and the bank step-up window.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from monterico.auth import SessionSigner, WebAuthnPasskeyVerifier
from monterico.config import SessionSettings, WebAuthnSettings
from monterico.errors import AuthorizationError, NotFoundError, ValidationError
from monterico.models.audit import AuditEventType
from monterico.models.auth import PasskeyUser, SessionClaims
from monterico.storage.tables import MFAMethodRow, UserRow

from conftest import enroll_and_verify, passkey_response


T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


async def step_up(gate, token: str, counter: int = 3, now: datetime = T0, credential_id: str = "cred-1"):
    start = await gate.begin_passkey_authentication(token)
    return await gate.verify_bank_operation_mfa(
        start.session.token,
        passkey_response(start.options["challenge"], credential_id, counter=counter),
        now=now,
    )


async def stored_counter(database, credential_id: str = "cred-1") -> int:
    async with database.transaction() as session:
        return (
            await session.execute(
                select(MFAMethodRow.counter).where(MFAMethodRow.credential_id == credential_id)
            )
        ).scalar_one()


class TestLogin:
    """Tests for password login and session tokens."""

    async def test_login(self, gate, household, audit_storage):
        """Test a correct password opens a session without MFA."""
        issued = await gate.login(household.email, household.password)

        claims = gate.authenticate(issued.token)
        assert claims.user_id == household.id
        assert claims.mfa_verified is False
        assert claims.mfa_setup_complete is False
        assert claims.bank_operation_mfa_verified_at is None
        assert audit_storage.events[-1].event_type == AuditEventType.LOGIN_SUCCEEDED

    async def test_email_is_case_insensitive(self, gate, household):
        """Test the email is matched after lowercasing."""
        issued = await gate.login("  ANA@Example.com ", household.password)
        assert issued.claims.user_id == household.id

    async def test_wrong_password(self, gate, household, audit_storage):
        """Test a wrong password is rejected as UNAUTHORIZED."""
        with pytest.raises(AuthorizationError) as exc_info:
            await gate.login(household.email, "wrong")
        assert exc_info.value.code == AuthorizationError.UNAUTHORIZED
        assert audit_storage.events[-1].event_type == AuditEventType.LOGIN_FAILED

    async def test_unknown_email(self, gate, household):
        """Test an unknown email gets the same error as a wrong password."""
        with pytest.raises(AuthorizationError) as exc_info:
            await gate.login("nobody@example.com", household.password)
        assert exc_info.value.message == "Invalid email or password"

    async def test_forged_token(self, gate, household):
        """Test a token signed with another key is rejected."""
        forger = SessionSigner(SessionSettings(secret_key="some-other-secret-0123456789"))
        forged = forger.issue(
            SessionClaims(user_id=household.id, email=household.email, mfa_verified=True)
        )
        with pytest.raises(AuthorizationError) as exc_info:
            gate.authenticate(forged.token)
        assert exc_info.value.code == AuthorizationError.UNAUTHORIZED

    async def test_expired_token(self, gate, signer, household):
        """Test a token past its lifetime is rejected."""
        old = signer.issue(
            SessionClaims(user_id=household.id, email=household.email),
            now=datetime.now(timezone.utc) - timedelta(days=2),
        )
        with pytest.raises(AuthorizationError) as exc_info:
            gate.authenticate(old.token)
        assert exc_info.value.message == "Session expired"

    def test_missing_token(self, gate):
        """Test no token at all is UNAUTHORIZED."""
        with pytest.raises(AuthorizationError):
            gate.authenticate("")


class TestPasskeyEnrollment:
    """Tests for registering passkeys."""

    async def test_registration(self, gate, database, household, audit_storage):
        """Test completing registration stores the passkey and marks setup complete."""
        session = await gate.login(household.email, household.password)
        start = await gate.begin_passkey_registration(session.token)
        assert start.session.claims.pending_challenge == start.options["challenge"]

        issued = await gate.complete_passkey_registration(
            start.session.token,
            passkey_response(start.options["challenge"], "cred-1"),
            device_name="Phone",
        )

        assert issued.claims.mfa_setup_complete is True
        assert issued.claims.mfa_verified is False
        assert issued.claims.pending_challenge is None
        methods = await gate.list_mfa_methods(issued.token)
        assert [m.name for m in methods] == ["Phone"]
        async with database.transaction() as db_session:
            user = await db_session.get(UserRow, household.id)
            assert user.mfa_setup_complete is True
        assert AuditEventType.PASSKEY_REGISTERED in [e.event_type for e in audit_storage.events]

    async def test_existing_credentials_excluded(self, gate, passkey_verifier, mfa_session):
        """Test a second registration excludes passkeys already stored."""
        await gate.begin_passkey_registration(mfa_session.token)
        assert passkey_verifier.excluded == ["cred-1"]

    async def test_complete_without_begin(self, gate, household):
        """Test completing a registration that was never started."""
        session = await gate.login(household.email, household.password)
        with pytest.raises(ValidationError):
            await gate.complete_passkey_registration(session.token, passkey_response("x"))

    async def test_rejected_attestation(self, gate, database, household):
        """Test a rejected attestation stores nothing."""
        session = await gate.login(household.email, household.password)
        start = await gate.begin_passkey_registration(session.token)

        with pytest.raises(AuthorizationError) as exc_info:
            await gate.complete_passkey_registration(
                start.session.token, passkey_response("not-the-challenge")
            )
        assert exc_info.value.code == AuthorizationError.MFA_VERIFICATION_FAILED
        async with database.transaction() as db_session:
            user = await db_session.get(UserRow, household.id)
            assert user.mfa_setup_complete is False

    async def test_duplicate_credential(self, gate, mfa_session):
        """Test the same credential can't be registered twice."""
        start = await gate.begin_passkey_registration(mfa_session.token)
        with pytest.raises(ValidationError):
            await gate.complete_passkey_registration(
                start.session.token, passkey_response(start.options["challenge"], "cred-1")
            )


class TestLoginMfa:
    """Tests for the passkey second factor."""

    async def test_authentication_needs_enrollment(self, gate, household):
        """Test a user without passkeys can't start authentication."""
        session = await gate.login(household.email, household.password)
        with pytest.raises(ValidationError):
            await gate.begin_passkey_authentication(session.token)

    async def test_login_mfa(self, gate, passkey_verifier, mfa_session, database):
        """Test a valid assertion sets mfa_verified and stores the counter."""
        assert mfa_session.claims.mfa_verified is True
        assert mfa_session.claims.pending_challenge is None
        assert passkey_verifier.allowed == ["cred-1"]
        assert await stored_counter(database) == 2

    async def test_counter_regression_rejected(self, gate, household, database, audit_storage):
        """Test a replayed counter fails and leaves the stored counter alone."""
        session = await enroll_and_verify(gate, household)
        start = await gate.begin_passkey_authentication(session.token)

        with pytest.raises(AuthorizationError) as exc_info:
            await gate.verify_login_mfa(
                start.session.token,
                passkey_response(start.options["challenge"], counter=2),
            )

        assert exc_info.value.code == AuthorizationError.MFA_VERIFICATION_FAILED
        assert await stored_counter(database) == 2
        assert audit_storage.events[-1].event_type == AuditEventType.MFA_VERIFICATION_FAILED

        retry = await gate.verify_login_mfa(
            start.session.token,
            passkey_response(start.options["challenge"], counter=3),
        )
        assert retry.claims.mfa_verified is True
        assert await stored_counter(database) == 3

    async def test_wrong_challenge(self, gate, household):
        """Test an assertion for another challenge is rejected."""
        session = await gate.login(household.email, household.password)
        start = await gate.begin_passkey_registration(session.token)
        session = await gate.complete_passkey_registration(
            start.session.token, passkey_response(start.options["challenge"])
        )
        start = await gate.begin_passkey_authentication(session.token)

        with pytest.raises(AuthorizationError):
            await gate.verify_login_mfa(
                start.session.token, passkey_response("auth-stale", counter=5)
            )

    async def test_no_pending_challenge(self, gate, mfa_session):
        """Test an assertion without a started ceremony is rejected."""
        with pytest.raises(AuthorizationError) as exc_info:
            await gate.verify_login_mfa(mfa_session.token, passkey_response("x", counter=9))
        assert exc_info.value.code == AuthorizationError.MFA_VERIFICATION_FAILED

    async def test_unknown_credential(self, gate, mfa_session):
        """Test an assertion from a passkey that isn't stored."""
        start = await gate.begin_passkey_authentication(mfa_session.token)
        with pytest.raises(AuthorizationError):
            await gate.verify_login_mfa(
                start.session.token,
                passkey_response(start.options["challenge"], "cred-unknown", counter=9),
            )


class TestBankStepUp:
    """Tests for the short-lived bank operation authorization."""

    async def test_step_up_requires_login_mfa(self, gate, household):
        """Test bank step-up needs a session that passed login MFA."""
        session = await gate.login(household.email, household.password)
        start = await gate.begin_passkey_registration(session.token)
        session = await gate.complete_passkey_registration(
            start.session.token, passkey_response(start.options["challenge"])
        )

        with pytest.raises(AuthorizationError) as exc_info:
            await step_up(gate, session.token)
        assert exc_info.value.code == AuthorizationError.MFA_REQUIRED

    async def test_never_stepped_up(self, gate, mfa_session, audit_storage):
        """Test a session without bank step-up is refused."""
        with pytest.raises(AuthorizationError) as exc_info:
            await gate.require_bank_operation_mfa(mfa_session.token, now=T0)
        assert exc_info.value.code == AuthorizationError.BANK_MFA_REQUIRED
        assert exc_info.value.is_step_up_required
        assert audit_storage.events[-1].event_type == AuditEventType.BANK_MFA_DENIED

    async def test_within_window(self, gate, mfa_session):
        """Test a step-up five minutes old is accepted."""
        stepped = await step_up(gate, mfa_session.token)
        claims = await gate.require_bank_operation_mfa(stepped.token, now=T0 + timedelta(minutes=5))
        assert claims.bank_operation_mfa_verified_at == int(T0.timestamp() * 1000)

    async def test_window_expired(self, gate, mfa_session):
        """Test a step-up twenty minutes old is expired."""
        stepped = await step_up(gate, mfa_session.token)
        with pytest.raises(AuthorizationError) as exc_info:
            await gate.require_bank_operation_mfa(stepped.token, now=T0 + timedelta(minutes=20))
        assert exc_info.value.code == AuthorizationError.BANK_MFA_EXPIRED

    async def test_window_edge(self, gate, mfa_session):
        """Test the step-up expires exactly at the end of the window."""
        stepped = await step_up(gate, mfa_session.token)
        with pytest.raises(AuthorizationError):
            await gate.require_bank_operation_mfa(stepped.token, now=T0 + timedelta(minutes=15))

    async def test_status(self, gate, mfa_session):
        """Test the status report before, during and after the window."""
        before = gate.bank_mfa_status(mfa_session.token, now=T0)
        assert before.verified is False
        assert before.required is True

        stepped = await step_up(gate, mfa_session.token)
        during = gate.bank_mfa_status(stepped.token, now=T0 + timedelta(minutes=10))
        assert during.verified is True
        assert during.remaining_ms == 5 * 60 * 1000

        after = gate.bank_mfa_status(stepped.token, now=T0 + timedelta(minutes=16))
        assert after.expired is True
        assert after.remaining_ms == 0

    async def test_failed_step_up_keeps_session(self, gate, mfa_session):
        """Test a failed step-up doesn't grant bank access."""
        start = await gate.begin_passkey_authentication(mfa_session.token)
        with pytest.raises(AuthorizationError):
            await gate.verify_bank_operation_mfa(
                start.session.token,
                passkey_response(start.options["challenge"], counter=3, signature="forged"),
                now=T0,
            )
        with pytest.raises(AuthorizationError) as exc_info:
            await gate.require_bank_operation_mfa(start.session.token, now=T0)
        assert exc_info.value.code == AuthorizationError.BANK_MFA_REQUIRED


class TestMfaMethods:
    """Tests for listing and removing passkeys."""

    async def add_second_passkey(self, gate, token: str):
        start = await gate.begin_passkey_registration(token)
        return await gate.complete_passkey_registration(
            start.session.token,
            passkey_response(start.options["challenge"], "cred-2"),
            device_name="Phone",
        )

    async def test_last_method_kept(self, gate, mfa_session):
        """Test the only passkey can't be removed."""
        methods = await gate.list_mfa_methods(mfa_session.token)
        with pytest.raises(ValidationError):
            await gate.delete_mfa_method(mfa_session.token, methods[0].id)
        assert len(await gate.list_mfa_methods(mfa_session.token)) == 1

    async def test_remove_one_of_two(self, gate, mfa_session, audit_storage):
        """Test a passkey can be removed while another remains."""
        session = await self.add_second_passkey(gate, mfa_session.token)
        methods = {m.name: m for m in await gate.list_mfa_methods(session.token)}
        assert set(methods) == {"Laptop", "Phone"}

        await gate.delete_mfa_method(session.token, methods["Laptop"].id)

        remaining = await gate.list_mfa_methods(session.token)
        assert [m.name for m in remaining] == ["Phone"]
        assert audit_storage.events[-1].event_type == AuditEventType.MFA_METHOD_REMOVED

    async def test_removed_passkey_stops_working(self, gate, mfa_session):
        """Test a removed passkey can no longer authenticate."""
        session = await self.add_second_passkey(gate, mfa_session.token)
        methods = {m.name: m for m in await gate.list_mfa_methods(session.token)}
        await gate.delete_mfa_method(session.token, methods["Laptop"].id)

        start = await gate.begin_passkey_authentication(session.token)
        with pytest.raises(AuthorizationError):
            await gate.verify_login_mfa(
                start.session.token,
                passkey_response(start.options["challenge"], "cred-1", counter=10),
            )

    async def test_foreign_method(self, gate, database, mfa_session):
        """Test another user's passkey can't be removed."""
        async with database.transaction() as session:
            other = UserRow(email="eve@example.com", name="Eve", password_hash="x")
            session.add(other)
            await session.flush()
            method = MFAMethodRow(
                user_id=other.id,
                type="passkey",
                name="Eve's key",
                credential_id="cred-eve",
                public_key="pk-cred-eve",
                counter=0,
            )
            session.add(method)
            await session.flush()
            foreign_id = method.id

        with pytest.raises(NotFoundError):
            await gate.delete_mfa_method(mfa_session.token, foreign_id)

    async def test_unknown_method(self, gate, mfa_session):
        """Test removing a passkey that doesn't exist."""
        with pytest.raises(NotFoundError):
            await gate.delete_mfa_method(mfa_session.token, "nope")


class TestWebAuthnAdapter:
    """Tests for the py_webauthn adapter's ceremony options."""

    @pytest.fixture
    def adapter(self) -> WebAuthnPasskeyVerifier:
        return WebAuthnPasskeyVerifier(
            WebAuthnSettings(rp_id="ledger.example", rp_name="Ledger", origin="https://ledger.example")
        )

    def test_registration_options(self, adapter):
        """Test registration options carry the challenge and the excluded credentials."""
        ceremony = adapter.generate_registration_challenge(
            PasskeyUser(user_id="u1", email="ana@example.com"),
            ["Y3JlZC0x"],
        )
        assert ceremony.options["challenge"] == ceremony.challenge
        assert ceremony.options["rp"]["id"] == "ledger.example"
        assert [c["id"] for c in ceremony.options["excludeCredentials"]] == ["Y3JlZC0x"]

    def test_authentication_options(self, adapter):
        """Test each ceremony gets a fresh challenge."""
        first = adapter.generate_authentication_challenge(["Y3JlZC0x"])
        second = adapter.generate_authentication_challenge(["Y3JlZC0x"])
        assert first.challenge != second.challenge
        assert [c["id"] for c in first.options["allowCredentials"]] == ["Y3JlZC0x"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
