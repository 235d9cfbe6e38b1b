"""Passwordless Chaum-Pedersen authentication with a transactional session store."""

from .auth import AuthOrchestrator, ChallengeResult, SessionResult
from .crypto import (
    ChaumPedersenProver,
    ChaumPedersenVerifier,
    Commitment,
    Group,
    ProofEngine,
    Transcript,
    derive_public_key,
    generate_secret,
)
from .errors import (
    AuthenticationFailed,
    AuthError,
    DuplicateUser,
    InvalidInput,
    NotFound,
    StoreCorruption,
    StoreUnavailable,
    VerificationFailed,
)
from .store import ActiveSessionRecord, AuthChallengeRecord, SessionStore, SweepResult, UserRecord
from .sweeper import ExpirySweeper

__all__ = [
    "AuthOrchestrator",
    "ChallengeResult",
    "SessionResult",
    "ChaumPedersenProver",
    "ChaumPedersenVerifier",
    "Commitment",
    "Group",
    "ProofEngine",
    "Transcript",
    "derive_public_key",
    "generate_secret",
    "AuthenticationFailed",
    "AuthError",
    "DuplicateUser",
    "InvalidInput",
    "NotFound",
    "StoreCorruption",
    "StoreUnavailable",
    "VerificationFailed",
    "ActiveSessionRecord",
    "AuthChallengeRecord",
    "SessionStore",
    "SweepResult",
    "UserRecord",
    "ExpirySweeper",
]
