"""Cashu cryptographic primitives for BDHKE (Blind Diffie-Hellmann Key Exchange)."""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

from coincurve import PrivateKey, PublicKey

from .types import BlindedMessage

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"

# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


@dataclass
class BlindedOutput:
    """A blinded output together with the data needed to unblind it later."""

    amount: int
    secret: str  # hex secret, unblinded
    r: bytes  # blinding factor
    message: BlindedMessage


def hash_to_curve(message: bytes) -> PublicKey:
    """Hash a message to a point on the secp256k1 curve.

    Follows NUT-00: the message is hashed with a domain separator, then a
    little-endian counter is appended until the digest is a valid x
    coordinate of an even-y point.
    """
    msg_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(2**16):
        digest = hashlib.sha256(msg_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + digest)
        except ValueError:
            continue
    raise ValueError("No valid point found")


def compute_y(secret: str) -> str:
    """Return the hex-encoded Y = hash_to_curve(secret) used by /v1/checkstate."""
    return hash_to_curve(secret.encode("utf-8")).format(compressed=True).hex()


def blind_message(secret: str, r: bytes | None = None) -> tuple[PublicKey, bytes]:
    """Blind a message for the mint.

    Args:
        secret: The secret message to blind
        r: Optional blinding factor (will be generated if not provided)

    Returns:
        Tuple of (blinded_point, blinding_factor)
    """
    Y = hash_to_curve(secret.encode("utf-8"))

    if r is None:
        r = secrets.token_bytes(32)

    # B' = Y + r*G
    B_ = PublicKey.combine_keys([Y, PrivateKey(r).public_key])
    return B_, r


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """Unblind a signature from the mint.

    Args:
        C_: Blinded signature from mint
        r: Blinding factor used
        K: Mint's public key for the amount

    Returns:
        Unblinded signature C = C' - r*K
    """
    # -r*K is (n - r)*K
    r_int = int.from_bytes(r, "big") % CURVE_ORDER
    neg_r = (CURVE_ORDER - r_int).to_bytes(32, "big")
    neg_rK = K.multiply(neg_r)
    return PublicKey.combine_keys([C_, neg_rK])


def sign_blinded_message(B_: PublicKey, k: PrivateKey) -> PublicKey:
    """Mint side: C' = k*B'."""
    return B_.multiply(k.secret)


def create_blinded_message(amount: int, keyset_id: str) -> BlindedOutput:
    """Create a fresh secret and its blinded message for ``amount``."""
    secret = secrets.token_hex(32)
    B_, r = blind_message(secret)
    return BlindedOutput(
        amount=amount,
        secret=secret,
        r=r,
        message=BlindedMessage(
            amount=amount,
            B_=B_.format(compressed=True).hex(),
            id=keyset_id,
        ),
    )


def get_mint_pubkey_for_amount(keys: dict[str, str], amount: int) -> PublicKey | None:
    """Look up the mint's public key for a denomination."""
    pubkey_hex = keys.get(str(amount))
    if pubkey_hex is None:
        return None
    return PublicKey(bytes.fromhex(pubkey_hex))


def derive_keyset_id(keys: dict[str, str]) -> str:
    """Derive a version 00 keyset id (NUT-02) from amount -> pubkey hex.

    The compressed public keys are concatenated in ascending amount order,
    hashed with SHA-256, and the first 7 bytes are prefixed with ``00``.
    """
    sorted_keys = sorted(keys.items(), key=lambda item: int(item[0]))
    keys_concat = b"".join(bytes.fromhex(pubkey) for _, pubkey in sorted_keys)
    return "00" + hashlib.sha256(keys_concat).hexdigest()[:14]
