"""
Quotes, permissions and the payments attached to messages.

A quote answers "what does it cost to put one message in this box":

    recipient_fee == -1   sender is blocked
    recipient_fee ==  0   always allowed
    recipient_fee  >  0   that many satoshis go to the recipient
    delivery_fee   >  0   that many satoshis go to the host that quoted

PaymentBuilder turns a quote into one transaction with one output per
non-zero fee. Every output is locked to a single-use key derived from a fresh
random prefix/suffix, and carries the remittance data the payee needs to
re-derive that key.
"""

import base64
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import PaymentError, ValidationError
from .script import p2pkh_locking_script
from .transaction import to_bytes
from .transport import IDENTITY_HEADER, AuthFetch, read_json
from .wallet import PAYMENT_PROTOCOL, KeyWallet, Wallet

logger = logging.getLogger(__name__)

DELIVERY_FEE_BASKET = "MessageBox delivery fees"
PAYMENT_DESCRIPTION = "MessageBox delivery payment"


# ------------------------------
# Data
# ------------------------------
@dataclass
class Quote:
    delivery_fee: int
    recipient_fee: int
    delivery_agent_identity_key: str

    @property
    def blocked(self) -> bool:
        return self.recipient_fee == -1

    @property
    def requires_payment(self) -> bool:
        return self.delivery_fee > 0 or self.recipient_fee > 0


def permission_status(recipient_fee: int) -> str:
    if recipient_fee == -1:
        return "blocked"
    if recipient_fee == 0:
        return "always_allow"
    return "payment_required"


@dataclass
class Permission:
    sender: Optional[str]
    message_box: str
    recipient_fee: int
    status: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "Permission":
        fee = int(data.get("recipientFee", 0))
        return Permission(
            sender=data.get("sender"),
            message_box=data.get("messageBox", ""),
            recipient_fee=fee,
            status=data.get("status") or permission_status(fee),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class Payment:
    tx: bytes
    outputs: List[Dict[str, Any]]
    description: str = PAYMENT_DESCRIPTION

    def to_json(self) -> Dict[str, Any]:
        return {"tx": list(self.tx), "outputs": self.outputs, "description": self.description}

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "Payment":
        try:
            return Payment(tx=to_bytes(data["tx"]), outputs=list(data.get("outputs") or []),
                           description=data.get("description") or PAYMENT_DESCRIPTION)
        except (KeyError, TypeError, ValueError) as e:
            raise PaymentError("malformed payment: %s" % e) from e


def random_derivation_part() -> str:
    return base64.b64encode(os.urandom(32)).decode()


def _check_box(message_box: str) -> None:
    if not message_box or not str(message_box).strip():
        raise ValidationError("You must provide a messageBox!")


# ------------------------------
# Negotiator
# ------------------------------
class QuoteNegotiator:
    """Quote and permission endpoints of a MessageBox host."""

    def __init__(self, fetch: AuthFetch):
        self.fetch = fetch

    async def get_quote(self, host: str, recipient: str, message_box: str) -> Quote:
        if not recipient:
            raise ValidationError("You must provide a message recipient!")
        _check_box(message_box)
        response = await self.fetch.get(host + "/permissions/quote",
                                        params={"recipient": recipient, "messageBox": message_box})
        data = read_json(response, "quote for %s/%s" % (recipient, message_box))
        agent = response.headers.get(IDENTITY_HEADER)
        if not agent:
            raise PaymentError("quote from %s did not identify the delivery agent" % host)
        quote = data.get("quote") or {}
        try:
            result = Quote(delivery_fee=int(quote.get("deliveryFee", 0)),
                           recipient_fee=int(quote.get("recipientFee", 0)),
                           delivery_agent_identity_key=agent)
        except (TypeError, ValueError) as e:
            raise PaymentError("malformed quote from %s: %s" % (host, e)) from e
        logger.debug("quote %s/%s: delivery %d, recipient %d", recipient, message_box,
                     result.delivery_fee, result.recipient_fee)
        return result

    async def set_permission(self, host: str, message_box: str, recipient_fee: int,
                             sender: Optional[str] = None) -> None:
        _check_box(message_box)
        if int(recipient_fee) < -1:
            raise ValidationError("recipientFee must be -1 (block), 0 (allow) or a positive amount")
        body = {"messageBox": message_box, "recipientFee": int(recipient_fee)}
        if sender is not None:
            body["sender"] = sender
        response = await self.fetch.post(host + "/permissions/set", body)
        read_json(response, "set permission for %s" % message_box)

    async def get_permission(self, host: str, recipient: str, message_box: str,
                             sender: Optional[str] = None) -> Optional[Permission]:
        _check_box(message_box)
        response = await self.fetch.get(host + "/permissions/get", params={
            "recipient": recipient, "messageBox": message_box, "sender": sender})
        data = read_json(response, "get permission for %s" % message_box)
        permission = data.get("permission")
        return Permission.from_json(permission) if permission else None

    async def list_permissions(self, host: str, message_box: Optional[str] = None, limit: Optional[int] = None,
                               offset: Optional[int] = None) -> List[Permission]:
        response = await self.fetch.get(host + "/permissions/list", params={
            "message_box": message_box, "limit": limit, "offset": offset})
        data = read_json(response, "list permissions")
        return [Permission.from_json(p) for p in data.get("permissions") or []]


# ------------------------------
# Payment builder
# ------------------------------
class PaymentBuilder:

    def __init__(self, wallet: Wallet):
        self.wallet = wallet
        self.anyone = KeyWallet.anyone()

    async def build(self, quote: Quote, recipient: str) -> Optional[Payment]:
        """One transaction paying every non-zero fee of quote, None when nothing is owed."""
        if quote.blocked:
            raise PaymentError("You have been blocked from sending messages to this recipient.")
        if not quote.requires_payment:
            return None

        outputs = []
        wire_outputs = []
        try:
            if quote.delivery_fee > 0:
                prefix, suffix = random_derivation_part(), random_derivation_part()
                key_id = "%s %s" % (prefix, suffix)
                agent = quote.delivery_agent_identity_key
                pub = await self.wallet.get_public_key(protocol_id=PAYMENT_PROTOCOL, key_id=key_id,
                                                       counterparty=agent)
                instructions = json.dumps({"derivationPrefix": prefix, "derivationSuffix": suffix,
                                           "recipientIdentityKey": agent})
                outputs.append({
                    "locking_script": p2pkh_locking_script(bytes.fromhex(pub)).hex(),
                    "satoshis": quote.delivery_fee,
                    "output_description": "MessageBox server delivery fee",
                    "custom_instructions": instructions,
                })
                wire_outputs.append({
                    "outputIndex": len(wire_outputs),
                    "protocol": "basket insertion",
                    "insertionRemittance": {
                        "basket": DELIVERY_FEE_BASKET,
                        "customInstructions": instructions,
                        "tags": ["messagebox-delivery-fee"],
                    },
                })

            if quote.recipient_fee > 0:
                prefix, suffix = random_derivation_part(), random_derivation_part()
                key_id = "%s %s" % (prefix, suffix)
                pub = await self.anyone.get_public_key(protocol_id=PAYMENT_PROTOCOL, key_id=key_id,
                                                       counterparty=recipient)
                outputs.append({
                    "locking_script": p2pkh_locking_script(bytes.fromhex(pub)).hex(),
                    "satoshis": quote.recipient_fee,
                    "output_description": "MessageBox recipient fee",
                    "custom_instructions": json.dumps({"derivationPrefix": prefix, "derivationSuffix": suffix,
                                                       "recipientIdentityKey": recipient}),
                })
                wire_outputs.append({
                    "outputIndex": len(wire_outputs),
                    "protocol": "wallet payment",
                    "paymentRemittance": {
                        "derivationPrefix": prefix,
                        "derivationSuffix": suffix,
                        "senderIdentityKey": self.anyone.identity_key,
                    },
                })

            action = await self.wallet.create_action(description=PAYMENT_DESCRIPTION, outputs=outputs,
                                                     options={"randomize_outputs": False})
        except PaymentError:
            raise
        except Exception as e:
            raise PaymentError("could not build message payment: %s" % e) from e

        tx = (action or {}).get("tx")
        if not tx:
            raise PaymentError("wallet returned no transaction for the message payment")
        return Payment(tx=to_bytes(tx), outputs=wire_outputs)
