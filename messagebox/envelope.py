"""
Envelope codec: message identifiers and the encryption envelope.

Bodies are classified once, at the boundary, into one of four variants:

    PlainText          a string body
    JsonObject         any other JSON value
    EncryptedEnvelope  {"encryptedMessage": base64}
    PaymentWrapped     {"message": ..., "payment": {...}} as stored by the server

open_body() never raises: an undecryptable or unparseable body becomes
DECRYPT_ERROR_SENTINEL so one bad message cannot stop an inbox listing.
"""

import base64
import binascii
import json
import logging
import unicodedata
from dataclasses import dataclass
from typing import Any, Optional, Union

from .errors import EnvelopeError, IdentityError
from .keys import ProtocolID
from .wallet import Wallet

logger = logging.getLogger(__name__)

MESSAGEBOX_PROTOCOL: ProtocolID = (1, "messagebox")
MESSAGEBOX_KEY_ID = "1"

DECRYPT_ERROR_SENTINEL = "[Error: Failed to decrypt or parse message]"


# ------------------------------
# Counterparty
# ------------------------------
@dataclass(frozen=True)
class Self:
    """The local identity addressing itself."""

    @property
    def wallet_arg(self) -> str:
        return "self"


@dataclass(frozen=True)
class Peer:
    identity_key: str

    @property
    def wallet_arg(self) -> str:
        return self.identity_key


Counterparty = Union[Self, Peer]


def counterparty_for(other: str, me: str) -> Counterparty:
    """Resolve a peer identity once; talking to ourselves collapses to Self()."""
    return Self() if other == me else Peer(other)


# ------------------------------
# Body variants
# ------------------------------
@dataclass
class PlainText:
    text: str


@dataclass
class JsonObject:
    value: Any


@dataclass
class EncryptedEnvelope:
    ciphertext: bytes


@dataclass
class PaymentWrapped:
    message: Any
    payment: dict


Body = Union[PlainText, JsonObject, EncryptedEnvelope, PaymentWrapped]


def _nfc(value: Any) -> Any:
    if isinstance(value, str):
        return unicodedata.normalize("NFC", value)
    if isinstance(value, list):
        return [_nfc(v) for v in value]
    if isinstance(value, dict):
        return {_nfc(k): _nfc(v) for k, v in value.items()}
    return value


def canonical_json(value: Any) -> str:
    """Compact JSON, keys sorted by code point, strings NFC normalized: equal values give equal text."""
    return json.dumps(_nfc(value), separators=(",", ":"), ensure_ascii=False, sort_keys=True)


def body_text(body: Any) -> str:
    """The string that is hashed and encrypted: strings as-is, anything else as JSON."""
    return body if isinstance(body, str) else canonical_json(body)


def classify(raw: Any) -> Body:
    """Decide the variant of a received body. Raises EnvelopeError for a broken envelope."""
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except ValueError:
            return PlainText(raw)
    if isinstance(value, dict):
        if "payment" in value and "message" in value:
            return PaymentWrapped(value["message"], value["payment"] or {})
        if "encryptedMessage" in value:
            encoded = value["encryptedMessage"]
            if not isinstance(encoded, str):
                raise EnvelopeError("encryptedMessage is not a base64 string")
            try:
                return EncryptedEnvelope(base64.b64decode(encoded, validate=True))
            except (binascii.Error, ValueError) as e:
                raise EnvelopeError("encryptedMessage is not valid base64: %s" % e) from e
    if isinstance(value, str):
        return PlainText(value)
    if isinstance(raw, str) and not isinstance(value, (dict, list)):
        # numbers, booleans and null arrive as their JSON text
        return PlainText(raw)
    return JsonObject(value)


# ------------------------------
# Codec
# ------------------------------
class EnvelopeCodec:

    def __init__(self, wallet: Wallet):
        self.wallet = wallet

    async def message_id(self, body: Any, counterparty: Counterparty) -> str:
        try:
            digest = await self.wallet.create_hmac(body_text(body).encode("utf-8"),
                                                   protocol_id=MESSAGEBOX_PROTOCOL, key_id=MESSAGEBOX_KEY_ID,
                                                   counterparty=counterparty.wallet_arg)
        except Exception as e:
            raise IdentityError("Failed to generate message identifier") from e
        return bytes(digest).hex()

    async def seal(self, body: Any, counterparty: Counterparty, skip_encryption: bool = False) -> str:
        """Wire form of an outgoing body."""
        text = body_text(body)
        if skip_encryption:
            return text
        ciphertext = await self.wallet.encrypt(text.encode("utf-8"), protocol_id=MESSAGEBOX_PROTOCOL,
                                               key_id=MESSAGEBOX_KEY_ID, counterparty=counterparty.wallet_arg)
        return canonical_json({"encryptedMessage": base64.b64encode(bytes(ciphertext)).decode()})

    async def open(self, body: Body, counterparty: Counterparty) -> Any:
        """Plaintext of a classified body; raises EnvelopeError."""
        if isinstance(body, PaymentWrapped):
            inner = body.message
            return await self.open(classify(inner), counterparty)
        if isinstance(body, PlainText):
            return body.text
        if isinstance(body, JsonObject):
            return body.value
        try:
            plaintext = await self.wallet.decrypt(body.ciphertext, protocol_id=MESSAGEBOX_PROTOCOL,
                                                  key_id=MESSAGEBOX_KEY_ID, counterparty=counterparty.wallet_arg)
            text = bytes(plaintext).decode("utf-8")
        except Exception as e:
            raise EnvelopeError("could not decrypt message: %s" % e) from e
        try:
            value = json.loads(text)
        except ValueError:
            return text
        return value if isinstance(value, (dict, list)) else text

    async def open_body(self, raw: Any, sender: str, me: str, message_id: Optional[str] = None) -> Any:
        """Decoded body of a received message, or the error sentinel."""
        try:
            return await self.open(classify(raw), counterparty_for(sender, me))
        except EnvelopeError as e:
            logger.error("message %s from %s: %s", message_id, sender, e)
            return DECRYPT_ERROR_SENTINEL
