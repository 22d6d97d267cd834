"""
Passkey Verification

DESIGN DECISION: The gate talks to an abstract PasskeyVerifier. This
allows us to:
1. Keep WebAuthn crypto out of the authorization logic
2. Use a deterministic fake verifier in tests
3. Swap the WebAuthn library without touching the gate

Challenges and credential material cross this boundary as base64url
strings so they can live in a session token and in the database.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Optional

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from monterico.audit import get_logger
from monterico.config import WebAuthnSettings, get_settings
from monterico.models.auth import (
    CeremonyOptions,
    PasskeyUser,
    StoredCredential,
    VerifiedAuthentication,
    VerifiedRegistration,
)


class PasskeyVerifier(ABC):
    """
    Abstract interface for the WebAuthn ceremonies.

    Implementations never raise on a bad response: they report
    verified=False and let the gate decide what to do.
    """

    @abstractmethod
    def generate_registration_challenge(
        self,
        user: PasskeyUser,
        exclude_credential_ids: list[str],
    ) -> CeremonyOptions:
        """
        Build registration options for a user.

        Args:
            user: Who is registering
            exclude_credential_ids: Credentials the authenticator must not re-register

        Returns:
            Browser options and the challenge they embed
        """
        pass

    @abstractmethod
    def verify_registration(
        self,
        response: dict[str, Any],
        expected_challenge: str,
    ) -> VerifiedRegistration:
        """
        Verify an attestation response.

        Returns:
            verified plus the credential id, public key and initial counter
        """
        pass

    @abstractmethod
    def generate_authentication_challenge(
        self,
        allowed_credential_ids: list[str],
    ) -> CeremonyOptions:
        """Build authentication options restricted to the given credentials."""
        pass

    @abstractmethod
    def verify_authentication(
        self,
        response: dict[str, Any],
        expected_challenge: str,
        credential: StoredCredential,
    ) -> VerifiedAuthentication:
        """
        Verify an assertion against a stored credential.

        A signature counter that did not increase must fail verification.
        """
        pass


class WebAuthnPasskeyVerifier(PasskeyVerifier):
    """py_webauthn implementation."""

    def __init__(self, settings: Optional[WebAuthnSettings] = None):
        self._settings = settings or get_settings().webauthn
        self._logger = get_logger("monterico.auth.passkeys")

    def generate_registration_challenge(
        self,
        user: PasskeyUser,
        exclude_credential_ids: list[str],
    ) -> CeremonyOptions:
        options = generate_registration_options(
            rp_id=self._settings.rp_id,
            rp_name=self._settings.rp_name,
            user_id=user.user_id.encode("utf-8"),
            user_name=user.email,
            user_display_name=user.email,
            timeout=self._settings.challenge_timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.REQUIRED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
            exclude_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(cid))
                for cid in exclude_credential_ids
            ],
        )
        return CeremonyOptions(
            options=json.loads(options_to_json(options)),
            challenge=bytes_to_base64url(options.challenge),
        )

    def verify_registration(
        self,
        response: dict[str, Any],
        expected_challenge: str,
    ) -> VerifiedRegistration:
        try:
            verification = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_origin=self._settings.origin,
                expected_rp_id=self._settings.rp_id,
                require_user_verification=True,
            )
        except InvalidRegistrationResponse as e:
            self._logger.warning("passkey_registration_rejected", error=str(e))
            return VerifiedRegistration(verified=False)

        return VerifiedRegistration(
            verified=True,
            credential_id=bytes_to_base64url(verification.credential_id),
            public_key=bytes_to_base64url(verification.credential_public_key),
            counter=verification.sign_count,
            transports=list(response.get("response", {}).get("transports", []) or []),
        )

    def generate_authentication_challenge(
        self,
        allowed_credential_ids: list[str],
    ) -> CeremonyOptions:
        options = generate_authentication_options(
            rp_id=self._settings.rp_id,
            timeout=self._settings.challenge_timeout_ms,
            allow_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(cid))
                for cid in allowed_credential_ids
            ],
            user_verification=UserVerificationRequirement.REQUIRED,
        )
        return CeremonyOptions(
            options=json.loads(options_to_json(options)),
            challenge=bytes_to_base64url(options.challenge),
        )

    def verify_authentication(
        self,
        response: dict[str, Any],
        expected_challenge: str,
        credential: StoredCredential,
    ) -> VerifiedAuthentication:
        try:
            verification = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=self._settings.rp_id,
                expected_origin=self._settings.origin,
                credential_public_key=base64url_to_bytes(credential.public_key),
                credential_current_sign_count=credential.counter,
                require_user_verification=True,
            )
        except InvalidAuthenticationResponse as e:
            # Includes a sign count that didn't increase
            self._logger.warning("passkey_assertion_rejected", error=str(e))
            return VerifiedAuthentication(verified=False, credential_id=credential.credential_id)

        return VerifiedAuthentication(
            verified=True,
            credential_id=credential.credential_id,
            new_counter=verification.new_sign_count,
        )
