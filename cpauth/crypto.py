"""Chaum-Pedersen proof of equality of discrete logarithms.

The prover knows ``x`` with ``y1 = g^x`` and ``y2 = h^x``. One round:

1. prover picks ``k`` and sends ``r1 = g^k``, ``r2 = h^k``;
2. verifier answers with a random challenge ``c``;
3. prover returns ``s = k - c*x mod q``;
4. verifier accepts iff ``r1 == g^s * y1^c`` and ``r2 == h^s * y2^c``.

``ProofEngine`` is the verifier side as the orchestrator consumes it. The
session store never performs any of this arithmetic.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Tuple

from .constants import CHALLENGE_BITS, G, H, P, Q
from .errors import InvalidInput


@dataclass(frozen=True)
class Group:
    """Prime-order subgroup of ``Z_p^*`` with two independent generators."""

    p: int
    q: int
    g: int
    h: int

    def contains(self, value: int) -> bool:
        if not 1 <= value < self.p:
            return False
        return pow(value, self.q, self.p) == 1


DEFAULT_GROUP = Group(p=P, q=Q, g=G, h=H)


@dataclass
class Commitment:
    """First message of a round. ``nonce`` never leaves the prover."""

    r1: int
    r2: int
    nonce: int


@dataclass(frozen=True)
class Transcript:
    """Commitments and challenge recorded for one authentication attempt."""

    c: int
    r1: int
    r2: int


class ChaumPedersenProver:
    """Client side: holds the secret exponent and answers challenges."""

    def __init__(self, secret: int, group: Group = DEFAULT_GROUP) -> None:
        if not 0 < secret < group.q:
            raise ValueError("Secret must lie in the multiplicative subgroup")
        self.secret = secret
        self.group = group

    def public_key(self) -> Tuple[int, int]:
        return (
            pow(self.group.g, self.secret, self.group.p),
            pow(self.group.h, self.secret, self.group.p),
        )

    def commit(self) -> Commitment:
        nonce = secrets.randbelow(self.group.q - 1) + 1
        return Commitment(
            r1=pow(self.group.g, nonce, self.group.p),
            r2=pow(self.group.h, nonce, self.group.p),
            nonce=nonce,
        )

    def respond(self, challenge: int, commitment: Commitment) -> int:
        if challenge < 0:
            raise ValueError("Challenge must be non-negative")
        return (commitment.nonce - challenge * self.secret) % self.group.q


class ChaumPedersenVerifier:
    """Checks responses against an enrolled ``(y1, y2)`` public key."""

    def __init__(self, y1: int, y2: int, group: Group = DEFAULT_GROUP) -> None:
        if not (group.contains(y1) and group.contains(y2)):
            raise ValueError("Invalid public key")
        self.y1 = y1
        self.y2 = y2
        self.group = group

    def random_challenge(self) -> int:
        bits = min(CHALLENGE_BITS, self.group.q.bit_length() - 1)
        return secrets.randbits(max(bits, 1)) % self.group.q

    def verify(self, r1: int, r2: int, challenge: int, response: int) -> bool:
        group = self.group
        if not 0 <= response < group.q:
            return False
        left1 = (pow(group.g, response, group.p) * pow(self.y1, challenge, group.p)) % group.p
        left2 = (pow(group.h, response, group.p) * pow(self.y2, challenge, group.p)) % group.p
        # Compare both halves before combining so the check does not short-circuit.
        ok1 = left1 == r1
        ok2 = left2 == r2
        return ok1 and ok2


class ProofEngine:
    """Verifier capability used by the protocol orchestrator."""

    def __init__(self, group: Group = DEFAULT_GROUP) -> None:
        self.group = group

    def validate_public_key(self, y1: int, y2: int) -> None:
        if not (self.group.contains(y1) and self.group.contains(y2)):
            raise InvalidInput("public key is not a group element", operation="validate_public_key")

    def new_transcript(self, y1: int, y2: int, r1: int, r2: int) -> Transcript:
        if not (self.group.contains(r1) and self.group.contains(r2)):
            raise InvalidInput("commitment is not a group element", operation="new_transcript")
        try:
            verifier = ChaumPedersenVerifier(y1, y2, self.group)
        except ValueError as exc:
            raise InvalidInput(str(exc), operation="new_transcript") from exc
        return Transcript(c=verifier.random_challenge(), r1=r1, r2=r2)

    def verify(self, y1: int, y2: int, transcript: Transcript, response: int) -> bool:
        try:
            verifier = ChaumPedersenVerifier(y1, y2, self.group)
        except ValueError:
            return False
        return verifier.verify(transcript.r1, transcript.r2, transcript.c, response)


def generate_secret(group: Group = DEFAULT_GROUP) -> int:
    """Generate a fresh secret exponent."""

    return secrets.randbelow(group.q - 1) + 1


def derive_public_key(secret: int, group: Group = DEFAULT_GROUP) -> Tuple[int, int]:
    """Derive the ``(y1, y2)`` enrollment key from a secret."""

    return ChaumPedersenProver(secret, group).public_key()


__all__ = [
    "ChaumPedersenProver",
    "ChaumPedersenVerifier",
    "Commitment",
    "DEFAULT_GROUP",
    "Group",
    "ProofEngine",
    "Transcript",
    "derive_public_key",
    "generate_secret",
]
