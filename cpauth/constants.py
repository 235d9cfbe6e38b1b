"""Group parameters and protocol defaults shared by the prover and the service."""

from __future__ import annotations

import hashlib
from datetime import timedelta

# RFC 3526 2048-bit MODP group (group 14). P is a safe prime, so the quadratic
# residues form a subgroup of prime order Q and 2 generates it.
P = int(
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3D"
    "C2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F"
    "83655D23DCA3AD961C62F356208552BB9ED529077096966D"
    "670C354E4ABC9804F1746C08CA18217C32905E462E36CE3B"
    "E39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9"
    "DE2BCBF6955817183995497CEA956AE515D2261898FA0510"
    "15728E5A8AACAA68FFFFFFFFFFFFFFFF",
    16,
)
Q = (P - 1) // 2
G = 2

H_LABEL = b"cpauth/chaum-pedersen/h/v1"


def _derive_second_generator(label: bytes) -> int:
    # Squaring lands in the order-Q subgroup; the hash keeps log_G(H) unknown.
    seed = int.from_bytes(hashlib.shake_256(label).digest(P.bit_length() // 8 + 16), "big")
    return pow(seed % P, 2, P)


H = _derive_second_generator(H_LABEL)

CHALLENGE_BITS = 256

# Upper bound on any stored or transmitted integer. Far above every group
# element, and below the interpreter's default int/str conversion limit.
MAX_INT_BITS = 8192
MAX_INT_DIGITS = len(str(1 << MAX_INT_BITS))

DEFAULT_CHALLENGE_TTL = timedelta(minutes=5)
DEFAULT_SESSION_TTL = timedelta(hours=24)
DEFAULT_SWEEP_INTERVAL = timedelta(minutes=5)

__all__ = [
    "CHALLENGE_BITS",
    "DEFAULT_CHALLENGE_TTL",
    "DEFAULT_SESSION_TTL",
    "DEFAULT_SWEEP_INTERVAL",
    "G",
    "H",
    "H_LABEL",
    "MAX_INT_BITS",
    "MAX_INT_DIGITS",
    "P",
    "Q",
]
