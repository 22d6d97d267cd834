"""
Shared fixtures.

Every test gets its own in-memory SQLite database. External services
(passkey crypto, the bank aggregator, the audit sink) are replaced by
deterministic fakes: no real API calls in tests.
"""

from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from werkzeug.security import generate_password_hash

from monterico.accounting import IndividualAccountsEngine, SharedPoolEngine
from monterico.audit import AuditLogger
from monterico.auth import SessionSigner, StepUpAuthorizationGate
from monterico.auth.passkeys import PasskeyVerifier
from monterico.banking import BankAggregatorClient
from monterico.config import LedgerSettings, SessionSettings
from monterico.models.auth import (
    CeremonyOptions,
    PasskeyUser,
    StoredCredential,
    VerifiedAuthentication,
    VerifiedRegistration,
)
from monterico.models.banking import (
    AccountBalance,
    AuthorizationStart,
    BankTransactionData,
    Institution,
    TransactionPage,
)
from monterico.orchestrator import LedgerFlow, SettingsService
from monterico.storage import Database, InMemoryAuditStorage
from monterico.storage.tables import CategoryRow, HouseholdMemberRow, UserRow


PASSWORD = "correct horse battery"


# =============================================================================
# FAKES
# =============================================================================

class FakePasskeyVerifier(PasskeyVerifier):
    """
    Accepts a response when it echoes the expected challenge.

    Responses look like:
        {"id": "cred-1", "challenge": "...", "counter": 3, "signature": "valid"}

    It deliberately does NOT check the signature counter, so tests see
    the gate's own counter check at work.
    """

    def __init__(self):
        self.excluded: list[str] = []
        self.allowed: list[str] = []

    def generate_registration_challenge(
        self,
        user: PasskeyUser,
        exclude_credential_ids: list[str],
    ) -> CeremonyOptions:
        self.excluded = list(exclude_credential_ids)
        challenge = f"reg-{uuid4().hex}"
        return CeremonyOptions(
            options={
                "challenge": challenge,
                "user": {"id": user.user_id, "name": user.email},
                "excludeCredentials": [{"id": c} for c in exclude_credential_ids],
            },
            challenge=challenge,
        )

    def verify_registration(
        self,
        response: dict[str, Any],
        expected_challenge: str,
    ) -> VerifiedRegistration:
        if response.get("challenge") != expected_challenge:
            return VerifiedRegistration(verified=False)
        return VerifiedRegistration(
            verified=True,
            credential_id=response["id"],
            public_key=f"pk-{response['id']}",
            counter=response.get("counter", 0),
            transports=["internal"],
        )

    def generate_authentication_challenge(
        self,
        allowed_credential_ids: list[str],
    ) -> CeremonyOptions:
        self.allowed = list(allowed_credential_ids)
        challenge = f"auth-{uuid4().hex}"
        return CeremonyOptions(
            options={
                "challenge": challenge,
                "allowCredentials": [{"id": c} for c in allowed_credential_ids],
            },
            challenge=challenge,
        )

    def verify_authentication(
        self,
        response: dict[str, Any],
        expected_challenge: str,
        credential: StoredCredential,
    ) -> VerifiedAuthentication:
        ok = (
            response.get("challenge") == expected_challenge
            and response.get("signature") == "valid"
            and credential.public_key == f"pk-{credential.credential_id}"
        )
        return VerifiedAuthentication(
            verified=ok,
            credential_id=credential.credential_id,
            new_counter=response.get("counter", 0),
        )


class FakeAggregator(BankAggregatorClient):
    """Serves canned transaction pages per account; page tokens are page indexes."""

    provider = "fake"

    def __init__(self, pages: Optional[dict[str, list[list[BankTransactionData]]]] = None):
        self.pages = pages or {}
        self.calls: list[tuple] = []

    async def list_institutions(
        self,
        country: str,
        persona_type: Optional[str] = None,
    ) -> list[Institution]:
        self.calls.append(("institutions", country))
        return [Institution(id="bank-1", name="Test Bank", country=country)]

    async def start_authorization(self, params: dict[str, Any]) -> AuthorizationStart:
        self.calls.append(("authorize", params))
        return AuthorizationStart(url="https://bank.example/authorize", session_id="agg-session-1")

    async def fetch_account_balance(self, session_id: str, account_ref: str) -> AccountBalance:
        self.calls.append(("balance", account_ref))
        return AccountBalance(current=Decimal("1200.50"), available=Decimal("1100.00"))

    async def fetch_transactions(
        self,
        session_id: str,
        account_ref: str,
        date_from: date,
        date_to: date,
        page_token: Optional[str] = None,
    ) -> TransactionPage:
        self.calls.append(("transactions", account_ref, page_token))
        pages = self.pages.get(account_ref, [])
        index = int(page_token) if page_token else 0
        if index >= len(pages):
            return TransactionPage()
        next_token = str(index + 1) if index + 1 < len(pages) else None
        return TransactionPage(transactions=pages[index], next_page_token=next_token)


def bank_tx(transaction_id: str, amount: str, account_id: str = "acc-1", **kwargs) -> BankTransactionData:
    return BankTransactionData(
        transaction_id=transaction_id,
        account_id=account_id,
        date=kwargs.pop("date", date(2024, 3, 10)),
        name=kwargs.pop("name", f"Shop {transaction_id}"),
        amount=Decimal(amount),
        **kwargs,
    )


def passkey_response(challenge: str, credential_id: str = "cred-1", counter: int = 1, **kwargs) -> dict:
    response = {
        "id": credential_id,
        "challenge": challenge,
        "counter": counter,
        "signature": "valid",
    }
    response.update(kwargs)
    return response


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def session_settings() -> SessionSettings:
    return SessionSettings(secret_key="test-secret-key-0123456789abcdef")


@pytest.fixture
def ledger_settings() -> LedgerSettings:
    return LedgerSettings(default_currency="EUR", sync_lookback_days=90)


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest_asyncio.fixture
async def database():
    db = Database("sqlite+aiosqlite:///:memory:", echo=False)
    await db.create_all()
    yield db
    await db.dispose()


async def count_rows(database, table) -> int:
    async with database.transaction() as session:
        return (await session.execute(select(func.count()).select_from(table))).scalar_one()


@pytest_asyncio.fixture
async def household(database):
    """A household with two active members (50/50) and one category."""
    return await seed_household(database)


async def seed_household(database) -> SimpleNamespace:
    async with database.transaction() as session:
        user = UserRow(
            email="ana@example.com",
            name="Ana",
            password_hash=generate_password_hash(PASSWORD),
        )
        session.add(user)
        await session.flush()

        ana = HouseholdMemberRow(
            user_id=user.id,
            name="Ana",
            split_ratio=Decimal("0.5"),
            created_at=datetime(2024, 1, 1, 9, 0),
        )
        ben = HouseholdMemberRow(
            user_id=user.id,
            name="Ben",
            split_ratio=Decimal("0.5"),
            created_at=datetime(2024, 1, 1, 10, 0),
        )
        groceries = CategoryRow(user_id=user.id, name="Groceries")
        session.add_all([ana, ben, groceries])
        await session.flush()

        return SimpleNamespace(
            id=user.id,
            email=user.email,
            password=PASSWORD,
            ana=ana.id,
            ben=ben.id,
            category=groceries.id,
        )


@pytest.fixture
def individual_engine(database, audit_logger) -> IndividualAccountsEngine:
    return IndividualAccountsEngine(database, audit_logger, default_currency="EUR")


@pytest.fixture
def pool_engine(database, audit_logger) -> SharedPoolEngine:
    return SharedPoolEngine(database, audit_logger, default_currency="EUR")


@pytest.fixture
def settings_service(database, pool_engine, audit_logger) -> SettingsService:
    return SettingsService(database, pool_engine, audit_logger)


@pytest.fixture
def ledger_flow(database, individual_engine, pool_engine, audit_logger) -> LedgerFlow:
    return LedgerFlow(database, individual_engine, pool_engine, audit_logger)


@pytest.fixture
def passkey_verifier() -> FakePasskeyVerifier:
    return FakePasskeyVerifier()


@pytest.fixture
def signer(session_settings) -> SessionSigner:
    return SessionSigner(session_settings)


@pytest.fixture
def gate(database, signer, passkey_verifier, audit_logger, session_settings) -> StepUpAuthorizationGate:
    return StepUpAuthorizationGate(
        database, signer, passkey_verifier, audit_logger, session_settings
    )


async def enroll_and_verify(gate: StepUpAuthorizationGate, household, credential_id: str = "cred-1"):
    """Log in, register a passkey (counter 1) and pass login MFA (counter 2)."""
    session = await gate.login(household.email, household.password)

    start = await gate.begin_passkey_registration(session.token)
    session = await gate.complete_passkey_registration(
        start.session.token,
        passkey_response(start.options["challenge"], credential_id, counter=1),
        device_name="Laptop",
    )

    start = await gate.begin_passkey_authentication(session.token)
    session = await gate.verify_login_mfa(
        start.session.token,
        passkey_response(start.options["challenge"], credential_id, counter=2),
    )
    return session


@pytest_asyncio.fixture
async def mfa_session(gate, household):
    """Session token with login MFA done (stored counter is 2)."""
    return await enroll_and_verify(gate, household)
