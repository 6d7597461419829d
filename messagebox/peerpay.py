"""
Peer-to-peer payments carried as messages in the "payment_inbox" box.

A payment token is a transaction paying a key the recipient can re-derive
(BRC-29 style: protocol (2, "3241645161d8"), key id "<prefix> <suffix>",
counterparty = the sender) plus the derivation prefix and suffix.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Union

from .client import MessageBoxClient
from .delivery import SendResult
from .errors import AggregateError, PaymentError, ValidationError
from .inbox import PeerMessage
from .script import p2pkh_locking_script
from .transaction import to_bytes
from .wallet import PAYMENT_PROTOCOL, create_nonce

logger = logging.getLogger(__name__)

STANDARD_PAYMENT_MESSAGEBOX = "payment_inbox"
STANDARD_PAYMENT_OUTPUT_INDEX = 0

# Kept by the rejecting party when refunding
REFUND_FEE = 1000


@dataclass
class PaymentToken:
    derivation_prefix: str
    derivation_suffix: str
    transaction: bytes
    amount: int

    def to_json(self) -> Dict[str, Any]:
        return {
            "customInstructions": {
                "derivationPrefix": self.derivation_prefix,
                "derivationSuffix": self.derivation_suffix,
            },
            "transaction": list(self.transaction),
            "amount": self.amount,
        }

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "PaymentToken":
        try:
            instructions = data["customInstructions"]
            return PaymentToken(derivation_prefix=instructions["derivationPrefix"],
                                derivation_suffix=instructions["derivationSuffix"],
                                transaction=to_bytes(data["transaction"]),
                                amount=int(data["amount"]))
        except (KeyError, TypeError, ValueError) as e:
            raise PaymentError("malformed payment token: %s" % e) from e


@dataclass
class IncomingPayment:
    message_id: str
    sender: str
    token: PaymentToken

    @staticmethod
    def from_message(message: PeerMessage) -> "IncomingPayment":
        if not isinstance(message.body, dict):
            raise PaymentError("message %s does not carry a payment token" % message.message_id)
        return IncomingPayment(message.message_id, message.sender, PaymentToken.from_json(message.body))


def _check_payment(recipient: str, amount: int) -> None:
    if not recipient or not str(recipient).strip() or amount is None or amount <= 0:
        raise ValidationError("Invalid payment details: recipient and valid amount are required")


class PeerPayClient(MessageBoxClient):

    async def create_payment_token(self, recipient: str, amount: int) -> PaymentToken:
        _check_payment(recipient, amount)
        prefix = await create_nonce(self.wallet)
        suffix = await create_nonce(self.wallet)
        key_id = "%s %s" % (prefix, suffix)
        try:
            pub = await self.wallet.get_public_key(protocol_id=PAYMENT_PROTOCOL, key_id=key_id,
                                                   counterparty=recipient)
        except Exception as e:
            raise PaymentError("Failed to derive recipient's public key: %s" % e) from e

        action = await self.wallet.create_action(
            description="PeerPay payment",
            outputs=[{
                "locking_script": p2pkh_locking_script(bytes.fromhex(pub)).hex(),
                "satoshis": amount,
                "output_description": "Payment for PeerPay transaction",
                "custom_instructions": json.dumps({"derivationPrefix": prefix, "derivationSuffix": suffix,
                                                   "payee": recipient}),
            }],
            options={"randomize_outputs": False},
        )
        if not (action or {}).get("tx"):
            raise PaymentError("Transaction creation failed!")
        return PaymentToken(prefix, suffix, to_bytes(action["tx"]), amount)

    async def send_payment(self, recipient: str, amount: int) -> SendResult:
        _check_payment(recipient, amount)
        token = await self.create_payment_token(recipient, amount)
        return await self.send_message(recipient, STANDARD_PAYMENT_MESSAGEBOX, token.to_json())

    async def send_live_payment(self, recipient: str, amount: int) -> SendResult:
        _check_payment(recipient, amount)
        token = await self.create_payment_token(recipient, amount)
        return await self.send_live_message(recipient, STANDARD_PAYMENT_MESSAGEBOX, token.to_json())

    async def listen_for_live_payments(self, on_payment: Callable[[IncomingPayment], Any]) -> str:
        def on_message(message: PeerMessage):
            try:
                payment = IncomingPayment.from_message(message)
            except PaymentError as e:
                logger.error("ignoring live message %s: %s", message.message_id, e)
                return None
            return on_payment(payment)

        return await self.listen_for_live_messages(STANDARD_PAYMENT_MESSAGEBOX, on_message)

    async def accept_payment(self, payment: IncomingPayment) -> Union[Dict[str, Any], str]:
        """Internalize and acknowledge. Failure is reported, not raised."""
        try:
            result = await self.wallet.internalize_action(
                payment.token.transaction,
                [{
                    "paymentRemittance": {
                        "derivationPrefix": payment.token.derivation_prefix,
                        "derivationSuffix": payment.token.derivation_suffix,
                        "senderIdentityKey": payment.sender,
                    },
                    "outputIndex": STANDARD_PAYMENT_OUTPUT_INDEX,
                    "protocol": "wallet payment",
                }],
                "PeerPay Payment",
            )
            await self.acknowledge_message([payment.message_id])
        except Exception as e:
            logger.error("could not accept payment %s: %s", payment.message_id, e)
            return "Unable to receive payment!"
        return {"payment": payment, "payment_result": result}

    async def reject_payment(self, payment: IncomingPayment) -> None:
        """
        Refund minus REFUND_FEE, or just drop the message when that would leave
        too little. Nothing is refunded unless the payment was received first:
        PaymentError otherwise.
        """
        if payment.token.amount - REFUND_FEE < REFUND_FEE:
            logger.info("payment %s too small to refund, acknowledging only", payment.message_id)
            await self._acknowledge_quietly(payment.message_id)
            return

        accepted = await self.accept_payment(payment)
        if not isinstance(accepted, dict):
            raise PaymentError("payment %s could not be accepted, not refunding" % payment.message_id)
        await self.send_payment(payment.sender, payment.token.amount - REFUND_FEE)
        try:
            await self.acknowledge_message([payment.message_id])
        except AggregateError as e:
            logger.warning("refunded %s but could not acknowledge it: %s", payment.message_id, e)

    async def _acknowledge_quietly(self, message_id: str) -> None:
        try:
            await self.acknowledge_message([message_id])
        except AggregateError as e:
            if not any(getattr(err, "status_code", None) == 401 for err in e.errors.values()):
                raise
            logger.warning("acknowledgment of %s not authorized: %s", message_id, e)

    async def list_incoming_payments(self) -> List[IncomingPayment]:
        payments = []
        for message in await self.list_messages(STANDARD_PAYMENT_MESSAGEBOX):
            try:
                payments.append(IncomingPayment.from_message(message))
            except PaymentError as e:
                logger.error("skipping message %s: %s", message.message_id, e)
        return payments
