# -*- coding: utf-8 -*-
"""
Identity & crypto provider.

The client never touches private keys itself: everything that needs one goes
through a Wallet. Any object implementing these coroutines works, e.g. an
adapter over a remote BRC-100 wallet. KeyWallet is the local implementation
over a single root key:

    - key derivation, HMAC, encryption and signatures are done locally (ecdsa,
      cryptography)
    - create_action builds and signs transactions itself, funds them from the
      coins bitsv finds for the key and broadcasts through bitsv
    - internalize_action checks the output really pays our derived key before
      recording it

Counterparty arguments are "self", "anyone" or a compressed public key in hex.
"""

import base64
import hashlib
import hmac
import logging
import os
import secrets
from dataclasses import dataclass
from typing import Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from ecdsa import BadSignatureError, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_der, sigencode_der_canonize
from bitsv import Key
from bitsv.network import NetworkAPI
from bitsv.utils import bytes_to_hex

from .errors import WalletError
from .keys import (
    ANYONE_PRIVATE_KEY, G, N, SECP, ProtocolID,
    derive_private_child, derive_public_child, ecdh_x, invoice_number,
    parse_public_key, point_to_bytes_compressed,
    priv_to_pub_compressed, sha256,
)
from .script import decode_pushdrop, p2pkh_locking_script, p2pkh_unlocking_script, pushdrop_unlock
from .transaction import (
    SIGHASH_ALL_FORKID, Transaction, TxInput, TxOutput, all_transactions, serialize_beef, signature_hash,
    subject_transaction,
)

logger = logging.getLogger(__name__)

# Shared with the payment builder: payees re-derive keys under this protocol
PAYMENT_PROTOCOL: ProtocolID = (2, "3241645161d8")

NONCE_PROTOCOL: ProtocolID = (2, "server hmac")

AES_IV_LENGTH = 32

FEE_PER_KB = 100
DUST_LIMIT = 1

# serialized sizes used for fee estimates
INPUT_SIZE = 41
P2PKH_UNLOCK_SIZE = 107
PUSHDROP_UNLOCK_SIZE = 74
CHANGE_OUTPUT_SIZE = 34


class Wallet:
    """Interface expected by the client. All methods are coroutines."""

    async def get_public_key(self, identity_key: bool = False, protocol_id: Optional[ProtocolID] = None,
                             key_id: Optional[str] = None, counterparty: str = "self",
                             for_self: bool = False) -> str:
        raise NotImplementedError

    async def create_hmac(self, data: bytes, protocol_id: ProtocolID, key_id: str,
                          counterparty: str = "self") -> bytes:
        raise NotImplementedError

    async def verify_hmac(self, data: bytes, digest: bytes, protocol_id: ProtocolID, key_id: str,
                          counterparty: str = "self") -> bool:
        raise NotImplementedError

    async def encrypt(self, plaintext: bytes, protocol_id: ProtocolID, key_id: str,
                      counterparty: str = "self") -> bytes:
        raise NotImplementedError

    async def decrypt(self, ciphertext: bytes, protocol_id: ProtocolID, key_id: str,
                      counterparty: str = "self") -> bytes:
        raise NotImplementedError

    async def create_signature(self, data: bytes, protocol_id: ProtocolID, key_id: str,
                               counterparty: str = "anyone") -> bytes:
        raise NotImplementedError

    async def verify_signature(self, data: bytes, signature: bytes, protocol_id: ProtocolID, key_id: str,
                               counterparty: str = "self", for_self: bool = False) -> bool:
        raise NotImplementedError

    async def create_action(self, description: str, outputs: Optional[List[Dict]] = None,
                            inputs: Optional[List[Dict]] = None, input_beef: Optional[bytes] = None,
                            options: Optional[Dict] = None) -> Dict:
        """
        Build, sign and (unless options["no_send"]) broadcast a transaction.

        outputs: {"locking_script": hex, "satoshis": int, "output_description": str,
                  "basket": str?, "custom_instructions": str?}
        inputs:  {"outpoint": "txid.vout", "input_description": str,
                  "unlocking": {"type": "pushdrop", "protocol_id", "key_id", "counterparty"}}
                  (the wallet produces the unlocking script from those parameters)

        Returns {"txid": hex, "tx": bytes} where tx is Atomic BEEF when the
        wallet supports it, a raw transaction otherwise.
        """
        raise NotImplementedError

    async def internalize_action(self, tx: bytes, outputs: List[Dict], description: str) -> Dict:
        """Take ownership of outputs of tx, described by remittance entries (wire shape)."""
        raise NotImplementedError


@dataclass
class ReceivedOutput:
    txid: str
    output_index: int
    satoshis: int
    protocol: str
    remittance: Dict
    private_key: Optional[int] = None


class KeyWallet(Wallet):
    """Local wallet over one root private key."""

    def __init__(self, priv: int, network: str = "main", key: Optional[Key] = None):
        if not 0 < priv < N:
            raise WalletError("private key out of range")
        self.priv = priv
        self.network = network
        self.key = key
        self.received: List[ReceivedOutput] = []

    @staticmethod
    def from_wif(wif: str, network: str = "main") -> "KeyWallet":
        key = Key(wif, network=network)
        return KeyWallet(key.to_int(), network=network, key=key)

    @staticmethod
    def random(network: str = "main") -> "KeyWallet":
        return KeyWallet(secrets.randbelow(N - 1) + 1, network=network)

    @staticmethod
    def anyone() -> "KeyWallet":
        return KeyWallet(ANYONE_PRIVATE_KEY)

    @property
    def identity_key(self) -> str:
        return bytes_to_hex(priv_to_pub_compressed(self.priv))

    # ---------- derivation ----------
    def _counterparty_point(self, counterparty: str):
        if counterparty == "self":
            return self.priv * G
        if counterparty == "anyone":
            return ANYONE_PRIVATE_KEY * G
        try:
            return parse_public_key(counterparty)
        except ValueError as e:
            raise WalletError("invalid counterparty %r: %s" % (counterparty, e))

    def _invoice(self, protocol_id: ProtocolID, key_id: str) -> str:
        try:
            return invoice_number(protocol_id, key_id)
        except ValueError as e:
            raise WalletError(str(e))

    def derive_private_key(self, protocol_id: ProtocolID, key_id: str, counterparty: str = "self") -> int:
        P = self._counterparty_point(counterparty)
        return derive_private_child(self.priv, P, self._invoice(protocol_id, key_id))

    def derive_public_key(self, protocol_id: ProtocolID, key_id: str, counterparty: str = "self",
                          for_self: bool = False) -> bytes:
        if for_self:
            return priv_to_pub_compressed(self.derive_private_key(protocol_id, key_id, counterparty))
        P = self._counterparty_point(counterparty)
        child = derive_public_child(self.priv, P, self._invoice(protocol_id, key_id))
        return point_to_bytes_compressed(child)

    def derive_symmetric_key(self, protocol_id: ProtocolID, key_id: str, counterparty: str = "self") -> bytes:
        """x coordinate of (our child private key) * (their child public key)."""
        their_child = parse_public_key(self.derive_public_key(protocol_id, key_id, counterparty))
        our_child = self.derive_private_key(protocol_id, key_id, counterparty)
        return ecdh_x(our_child, their_child)

    # ---------- wallet interface ----------
    async def get_public_key(self, identity_key=False, protocol_id=None, key_id=None,
                             counterparty="self", for_self=False) -> str:
        if identity_key:
            return self.identity_key
        if protocol_id is None or key_id is None:
            raise WalletError("protocol_id and key_id are required unless identity_key is set")
        return bytes_to_hex(self.derive_public_key(protocol_id, key_id, counterparty, for_self))

    async def create_hmac(self, data, protocol_id, key_id, counterparty="self") -> bytes:
        key = self.derive_symmetric_key(protocol_id, key_id, counterparty)
        return hmac.new(key, bytes(data), hashlib.sha256).digest()

    async def verify_hmac(self, data, digest, protocol_id, key_id, counterparty="self") -> bool:
        expected = await self.create_hmac(data, protocol_id, key_id, counterparty)
        return hmac.compare_digest(expected, bytes(digest))

    async def encrypt(self, plaintext, protocol_id, key_id, counterparty="self") -> bytes:
        key = self.derive_symmetric_key(protocol_id, key_id, counterparty)
        iv = os.urandom(AES_IV_LENGTH)
        return iv + AESGCM(key).encrypt(iv, bytes(plaintext), None)

    async def decrypt(self, ciphertext, protocol_id, key_id, counterparty="self") -> bytes:
        ciphertext = bytes(ciphertext)
        if len(ciphertext) <= AES_IV_LENGTH + 16:
            raise WalletError("ciphertext too short")
        key = self.derive_symmetric_key(protocol_id, key_id, counterparty)
        iv, body = ciphertext[:AES_IV_LENGTH], ciphertext[AES_IV_LENGTH:]
        try:
            return AESGCM(key).decrypt(iv, body, None)
        except InvalidTag:
            raise WalletError("decryption failed: wrong key or corrupted ciphertext")

    async def create_signature(self, data, protocol_id, key_id, counterparty="anyone") -> bytes:
        child = self.derive_private_key(protocol_id, key_id, counterparty)
        sk = SigningKey.from_secret_exponent(child, curve=SECP, hashfunc=hashlib.sha256)
        return sk.sign_digest_deterministic(sha256(bytes(data)), hashfunc=hashlib.sha256,
                                            sigencode=sigencode_der_canonize)

    async def verify_signature(self, data, signature, protocol_id, key_id,
                               counterparty="self", for_self=False) -> bool:
        pub = self.derive_public_key(protocol_id, key_id, counterparty, for_self)
        vk = VerifyingKey.from_string(pub, curve=SECP)
        try:
            return vk.verify_digest(bytes(signature), sha256(bytes(data)), sigdecode=sigdecode_der)
        except BadSignatureError:
            return False

    async def create_action(self, description, outputs=None, inputs=None, input_beef=None, options=None) -> Dict:
        """
        Outputs may carry any locking script. Inputs must say how to unlock
        them (only PushDrop outputs locked to one of our child keys are
        understood) and their source transactions must be in input_beef.
        The rest is funded from the P2PKH coins of self.key, with change
        going back to it.
        """
        options = options or {}
        sources = all_transactions(input_beef) if input_beef else []
        spends = [self._spend(entry, sources) for entry in inputs or []]
        tx_outputs = [TxOutput(int(out["satoshis"]), bytes.fromhex(out["locking_script"])) for out in outputs or []]

        coins, change = self._fund([source for source, _ in spends], tx_outputs)
        tx = Transaction(inputs=[TxInput(*self._outpoint(entry["outpoint"]), b"") for entry in inputs or []],
                         outputs=list(tx_outputs))
        tx.inputs.extend(TxInput(coin.txid, coin.txindex, b"") for coin in coins)
        if change:
            tx.outputs.append(TxOutput(change, self._funding_script()))

        for index, (source, unlocking) in enumerate(spends):
            tx.inputs[index].unlocking_script = await pushdrop_unlock(
                self, tx, index, source, tuple(unlocking["protocol_id"]), unlocking["key_id"],
                unlocking.get("counterparty", "self"))
        for index, coin in enumerate(coins, start=len(spends)):
            signature = self._sign_input(tx, index, self._funding_script(), coin.amount)
            tx.inputs[index].unlocking_script = p2pkh_unlocking_script(signature, self.key.public_key)

        txid = tx.txid
        logger.debug("created action %r as %s: %d inputs, %d outputs, change %d",
                     description, txid, len(tx.inputs), len(tx.outputs), change)
        if not options.get("no_send"):
            try:
                NetworkAPI(self.network).broadcast_tx(tx.serialize().hex())
            except Exception as e:
                raise WalletError("broadcast of %s failed: %s" % (txid, e)) from e
        return {"txid": txid, "tx": serialize_beef(sources + [tx], atomic=True)}

    # ---------- transaction building ----------
    @staticmethod
    def _outpoint(outpoint: str):
        txid, _, vout = str(outpoint).partition(".")
        if len(txid) != 64 or not vout.isdigit():
            raise WalletError("invalid outpoint %r" % outpoint)
        return txid, int(vout)

    def _spend(self, entry: Dict, sources: List[Transaction]):
        """(source output, unlocking parameters) for one script-locked input."""
        unlocking = entry.get("unlocking") or {}
        if unlocking.get("type") != "pushdrop":
            raise WalletError("KeyWallet can only unlock pushdrop inputs, not %r" % unlocking.get("type"))
        txid, vout = self._outpoint(entry["outpoint"])
        for source in sources:
            if source.txid == txid:
                break
        else:
            raise WalletError("source transaction of %s is not in input_beef" % entry["outpoint"])
        if vout >= len(source.outputs):
            raise WalletError("output %d not in transaction %s" % (vout, txid))
        output = source.outputs[vout]
        try:
            locking_pub, _ = decode_pushdrop(output.locking_script)
        except ValueError as e:
            raise WalletError("%s is not a pushdrop output: %s" % (entry["outpoint"], e))
        ours = self.derive_public_key(tuple(unlocking["protocol_id"]), unlocking["key_id"],
                                      unlocking.get("counterparty", "self"), for_self=True)
        if locking_pub != ours:
            raise WalletError("%s is not locked to a key we can derive" % entry["outpoint"])
        return output, unlocking

    def _funding_script(self) -> bytes:
        return p2pkh_locking_script(self.key.public_key)

    def _fee(self, spends: List[TxOutput], n_coins: int, outputs: List[TxOutput]) -> int:
        size = 4 + 3 + 3 + 4
        size += len(spends) * (INPUT_SIZE + PUSHDROP_UNLOCK_SIZE)
        size += n_coins * (INPUT_SIZE + P2PKH_UNLOCK_SIZE)
        size += sum(9 + len(o.locking_script) for o in outputs) + CHANGE_OUTPUT_SIZE
        return max(1, -(-size * FEE_PER_KB // 1000))

    def _fund(self, spends: List[TxOutput], outputs: List[TxOutput]):
        """
        Pick our own coins, largest first, until inputs cover outputs plus
        fee. Returns (coins, change); change below DUST_LIMIT is left to the
        miner.
        """
        needed = sum(o.satoshis for o in outputs)
        total = sum(s.satoshis for s in spends)
        coins = []
        pool = None
        while True:
            fee = self._fee(spends, len(coins), outputs)
            if total >= needed + fee:
                change = total - needed - fee
                return coins, (change if change >= DUST_LIMIT else 0)
            if pool is None:
                pool = self._unspents()
            if not pool:
                raise WalletError("insufficient funds: need %d, have %d" % (needed + fee, total))
            coin = pool.pop(0)
            coins.append(coin)
            total += coin.amount

    def _unspents(self) -> list:
        if self.key is None:
            raise WalletError("KeyWallet has no funding key; construct it with from_wif()")
        try:
            unspents = self.key.get_unspents()
        except Exception as e:
            raise WalletError("could not fetch coins of %s: %s" % (self.key.address, e)) from e
        return sorted(unspents, key=lambda u: (-u.amount, u.txid, u.txindex))

    def _sign_input(self, tx: Transaction, index: int, subscript: bytes, satoshis: int) -> bytes:
        digest = signature_hash(tx, index, subscript, satoshis)
        sk = SigningKey.from_secret_exponent(self.key.to_int(), curve=SECP)
        der = sk.sign_digest_deterministic(digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize)
        return der + bytes([SIGHASH_ALL_FORKID])

    async def internalize_action(self, tx, outputs, description) -> Dict:
        transaction = subject_transaction(tx)
        txid = transaction.txid
        for entry in outputs:
            index = entry["outputIndex"]
            if index >= len(transaction.outputs):
                raise WalletError("output %d not in transaction %s" % (index, txid))
            output = transaction.outputs[index]
            if entry["protocol"] == "wallet payment":
                remittance = entry["paymentRemittance"]
                key_id = "%s %s" % (remittance["derivationPrefix"], remittance["derivationSuffix"])
                child = self.derive_private_key(PAYMENT_PROTOCOL, key_id, remittance["senderIdentityKey"])
                if output.locking_script != p2pkh_locking_script(priv_to_pub_compressed(child)):
                    raise WalletError("output %d of %s does not pay a key we can derive" % (index, txid))
                self.received.append(ReceivedOutput(txid, index, output.satoshis, entry["protocol"],
                                                    remittance, child))
            else:
                self.received.append(ReceivedOutput(txid, index, output.satoshis, entry["protocol"],
                                                    entry.get("insertionRemittance", {})))
        logger.debug("internalized %d outputs of %s (%s)", len(outputs), txid, description)
        return {"accepted": True}


async def create_nonce(wallet: Wallet, counterparty: str = "self") -> str:
    """16 random bytes followed by our HMAC over them, base64 encoded."""
    first = os.urandom(16)
    digest = await wallet.create_hmac(first, protocol_id=NONCE_PROTOCOL, key_id=bytes_to_hex(first),
                                      counterparty=counterparty)
    return base64.b64encode(first + bytes(digest)).decode()


async def verify_nonce(wallet: Wallet, nonce: str, counterparty: str = "self") -> bool:
    raw = base64.b64decode(nonce)
    first, digest = raw[:16], raw[16:]
    return await wallet.verify_hmac(first, digest, protocol_id=NONCE_PROTOCOL, key_id=bytes_to_hex(first),
                                    counterparty=counterparty)
