# -*- coding: utf-8 -*-
"""
secp256k1 helpers and child-key derivation.

Derivation follows the counterparty scheme used across the BSV wallet stack:

    invoice  = "<security level>-<protocol name>-<key id>"
    tweak    = HMAC-SHA256(key=serP(priv_self * Pub_other), msg=invoice)
    child    = priv_self + tweak            (our private child)
    Child    = Pub_other + tweak * G        (their public child)

Both sides compute the same tweak because the ECDH point is symmetric, so the
child private key one party derives matches the child public key the other
party derives for it.
"""

import hmac
import hashlib
from typing import Tuple, Union

from ecdsa import SECP256k1, ellipticcurve

SECP = SECP256k1
G = SECP.generator
N = SECP.order

ProtocolID = Tuple[int, str]

# Private key 1: the publicly known "anyone" identity
ANYONE_PRIVATE_KEY = 1


# ------------------------------
# Hashing
# ------------------------------
def sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()

def dbl_sha256(b: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(b).digest()).digest()

def ripemd160(b: bytes) -> bytes:
    h = hashlib.new("ripemd160")
    h.update(b)
    return h.digest()

def h160(b: bytes) -> bytes:
    return ripemd160(sha256(b))

def int_from_bytes(b: bytes) -> int:
    return int.from_bytes(b, "big")

def i2b32(i: int) -> bytes:
    return i.to_bytes(32, "big")


# ------------------------------
# EC helpers (compressed pubkeys)
# ------------------------------
def point_to_bytes_compressed(P) -> bytes:
    x = P.x()
    y = P.y()
    return (b"\x02" if y % 2 == 0 else b"\x03") + x.to_bytes(32, "big")

def bytes_to_point(b: bytes) -> ellipticcurve.PointJacobi:
    if len(b) != 33 or b[0] not in (2, 3):
        raise ValueError("invalid compressed pub")
    x = int.from_bytes(b[1:], "big")
    curve = SECP.curve
    p = curve.p()
    alpha = (x * x * x + 7) % p
    beta = pow(alpha, (p + 1) // 4, p)
    if (beta * beta) % p != alpha:
        raise ValueError("x is not on secp256k1")
    y = beta
    if (y % 2) != (b[0] % 2):
        y = (-y) % p
    return ellipticcurve.PointJacobi.from_affine(ellipticcurve.Point(curve, x, y))

def parse_public_key(key: Union[str, bytes]) -> ellipticcurve.PointJacobi:
    if isinstance(key, str):
        try:
            key = bytes.fromhex(key)
        except ValueError:
            raise ValueError("public key is not hex")
    return bytes_to_point(key)

def priv_to_pub_compressed(priv: int) -> bytes:
    return point_to_bytes_compressed(priv * G)

def priv_add_tweak(priv: int, tweak: int) -> int:
    k = (priv + tweak) % N
    if k == 0:
        raise ValueError("Reject-zero derivation")
    return k

def pubkey_add_tweak(P: ellipticcurve.PointJacobi, tweak: int) -> ellipticcurve.PointJacobi:
    return P + tweak * G

def ecdh_point(priv: int, P: ellipticcurve.PointJacobi) -> bytes:
    """Compressed encoding of priv * P, used as the HMAC key for tweaks."""
    return point_to_bytes_compressed(priv * P)

def ecdh_x(priv: int, P: ellipticcurve.PointJacobi) -> bytes:
    return i2b32((priv * P).x())


# ------------------------------
# Invoice numbers / tweaks
# ------------------------------
def invoice_number(protocol_id: ProtocolID, key_id: str) -> str:
    level, name = protocol_id
    if level not in (0, 1, 2):
        raise ValueError("security level must be 0, 1 or 2")
    name = name.strip().lower()
    if len(name) < 5:
        raise ValueError("protocol names must be 5 characters or more")
    if not key_id:
        raise ValueError("key IDs must be 1 character or more")
    return "%d-%s-%s" % (level, name, key_id)

def derivation_tweak(priv: int, P: ellipticcurve.PointJacobi, invoice: str) -> int:
    shared = ecdh_point(priv, P)
    digest = hmac.new(shared, invoice.encode("utf-8"), hashlib.sha256).digest()
    return int_from_bytes(digest) % N

def derive_private_child(priv: int, P_other: ellipticcurve.PointJacobi, invoice: str) -> int:
    return priv_add_tweak(priv, derivation_tweak(priv, P_other, invoice))

def derive_public_child(priv: int, P_other: ellipticcurve.PointJacobi, invoice: str) -> ellipticcurve.PointJacobi:
    return pubkey_add_tweak(P_other, derivation_tweak(priv, P_other, invoice))

