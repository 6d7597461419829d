"""
Advertisement codec.

An advertisement is a 1-satoshi PushDrop output saying "identity X receives
messages at host Y". The field layout is versioned:

    field 0   b"MBSERVEAD"            protocol tag
    field 1   version (one byte, 1)
    field 2   identity key            33-byte compressed public key
    field 3   host                    UTF-8 absolute URL
    field 4   signature               over fields 0..3, by the locking key

Anything with another tag or version is not an advertisement this client
understands and is rejected by decode_advertisement().
"""

from dataclasses import dataclass
from typing import List, Tuple
from urllib.parse import urlparse

from ecdsa import BadSignatureError, VerifyingKey
from ecdsa.util import sigdecode_der

from .keys import (
    ANYONE_PRIVATE_KEY, SECP, ProtocolID, derive_public_child, invoice_number, parse_public_key,
    point_to_bytes_compressed, sha256,
)
from .script import decode_pushdrop, pushdrop_lock
from .transaction import parse_beef, to_bytes

ADVERTISEMENT_TAG = b"MBSERVEAD"
SCHEMA_VERSION = 1

TOPIC = "tm_messagebox"
LOOKUP_SERVICE = "ls_messagebox"

ADVERTISEMENT_PROTOCOL: ProtocolID = (1, "messagebox advertisement")
ADVERTISEMENT_KEY_ID = "1"
ADVERTISEMENT_COUNTERPARTY = "anyone"
ADVERTISEMENT_SATOSHIS = 1


@dataclass
class AdvertisementToken:
    host: str
    identity_key: str
    txid: str
    output_index: int
    locking_script: str
    beef: bytes

    @property
    def outpoint(self) -> str:
        return "%s.%d" % (self.txid, self.output_index)


def is_valid_host(host: str) -> bool:
    try:
        parsed = urlparse(host)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def advertisement_fields(identity_key: str, host: str) -> List[bytes]:
    return [ADVERTISEMENT_TAG, bytes([SCHEMA_VERSION]), bytes.fromhex(identity_key), host.encode("utf-8")]


def parse_advertisement_fields(fields: List[bytes]) -> Tuple[str, str]:
    """(identity_key, host) from PushDrop fields; ValueError if they are not an advertisement."""
    if len(fields) < 4:
        raise ValueError("advertisement needs at least 4 fields, got %d" % len(fields))
    if fields[0] != ADVERTISEMENT_TAG:
        raise ValueError("not a MessageBox advertisement")
    if fields[1] != bytes([SCHEMA_VERSION]):
        raise ValueError("unsupported advertisement version %r" % fields[1])
    identity_key = fields[2].hex()
    parse_public_key(identity_key)
    host = fields[3].decode("utf-8")
    if not is_valid_host(host):
        raise ValueError("advertised host %r is not an absolute URL" % host)
    return identity_key, host


def advertisement_locking_key(identity_key: str) -> bytes:
    """The key an advertisement for identity_key must be locked to, as anyone can derive it."""
    child = derive_public_child(ANYONE_PRIVATE_KEY, parse_public_key(identity_key),
                                invoice_number(ADVERTISEMENT_PROTOCOL, ADVERTISEMENT_KEY_ID))
    return point_to_bytes_compressed(child)


def verify_advertisement(locking_pub: bytes, fields: List[bytes], identity_key: str) -> None:
    """
    Raise ValueError unless the token is locked to identity_key's advertisement
    key and field 4 is that key's signature over fields 0..3.
    """
    if len(fields) < 5:
        raise ValueError("advertisement is not signed")
    if locking_pub != advertisement_locking_key(identity_key):
        raise ValueError("advertisement is not locked to the key of %s" % identity_key)
    vk = VerifyingKey.from_string(locking_pub, curve=SECP)
    try:
        vk.verify_digest(fields[4], sha256(b"".join(fields[:4])), sigdecode=sigdecode_der)
    except BadSignatureError as e:
        raise ValueError("bad advertisement signature: %s" % e) from e


async def build_advertisement_script(wallet, identity_key: str, host: str) -> bytes:
    return await pushdrop_lock(wallet, advertisement_fields(identity_key, host),
                               ADVERTISEMENT_PROTOCOL, ADVERTISEMENT_KEY_ID,
                               ADVERTISEMENT_COUNTERPARTY, include_signature=True)


def decode_advertisement(beef, output_index: int) -> AdvertisementToken:
    """Decode one lookup result. Any malformation raises ValueError."""
    beef = to_bytes(beef)
    tx = parse_beef(beef).subject
    if not 0 <= output_index < len(tx.outputs):
        raise ValueError("output index %d out of range" % output_index)
    script = tx.outputs[output_index].locking_script
    locking_pub, fields = decode_pushdrop(script)
    identity_key, host = parse_advertisement_fields(fields)
    verify_advertisement(locking_pub, fields, identity_key)
    return AdvertisementToken(host=host, identity_key=identity_key, txid=tx.txid,
                              output_index=output_index, locking_script=script.hex(), beef=beef)
