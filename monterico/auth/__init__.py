"""
Auth Package

Signed sessions, passkey ceremonies and the step-up gate that guards
bank operations.
"""

from monterico.auth.gate import StepUpAuthorizationGate
from monterico.auth.passkeys import PasskeyVerifier, WebAuthnPasskeyVerifier
from monterico.auth.session import SessionSigner

__all__ = [
    "PasskeyVerifier",
    "SessionSigner",
    "StepUpAuthorizationGate",
    "WebAuthnPasskeyVerifier",
]
