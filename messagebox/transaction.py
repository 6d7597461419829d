"""
Raw transaction and BEEF handling.

Only what the client needs: pull the subject transaction (and its outputs'
locking scripts) out of raw, BEEF V1/V2 or Atomic BEEF bytes, and write the
same formats back out. Merkle paths are parsed to be skipped correctly; they
are not verified here, that is the overlay's job.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union

from bitsv.utils import bytes_to_hex

from .keys import dbl_sha256

BEEF_V1 = 4022206465       # serialized as 01 00 BE EF
BEEF_V2 = 4022206466       # serialized as 02 00 BE EF
ATOMIC_BEEF_PREFIX = b"\x01\x01\x01\x01"

SIGHASH_ALL_FORKID = 0x41

# BEEF V2 per-transaction format byte
RAW_TX = 0
RAW_TX_AND_BUMP_INDEX = 1
TXID_ONLY = 2


@dataclass
class TxInput:
    prev_txid: str
    prev_index: int
    unlocking_script: bytes
    sequence: int = 0xffffffff


@dataclass
class TxOutput:
    satoshis: int
    locking_script: bytes


@dataclass
class Transaction:
    version: int = 1
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    locktime: int = 0

    def serialize(self) -> bytes:
        return serialize_transaction(self)

    @property
    def txid(self) -> str:
        return bytes_to_hex(dbl_sha256(self.serialize())[::-1])


@dataclass
class Beef:
    version: int
    transactions: List[Transaction]
    atomic_txid: Optional[str] = None

    @property
    def subject(self) -> Transaction:
        if not self.transactions:
            raise ValueError("BEEF carries no transactions")
        if self.atomic_txid is not None:
            for tx in self.transactions:
                if tx.txid == self.atomic_txid:
                    return tx
            raise ValueError("atomic BEEF subject %s not found" % self.atomic_txid)
        return self.transactions[-1]


# ------------------------------
# Byte reader / writer helpers
# ------------------------------
class Reader:
    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.pos = 0

    def read(self, n: int) -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise ValueError("unexpected end of data")
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def read_u8(self) -> int:
        return self.read(1)[0]

    def read_u32(self) -> int:
        return int.from_bytes(self.read(4), "little")

    def read_u64(self) -> int:
        return int.from_bytes(self.read(8), "little")

    def read_varint(self) -> int:
        first = self.read_u8()
        if first < 0xfd:
            return first
        if first == 0xfd:
            return int.from_bytes(self.read(2), "little")
        if first == 0xfe:
            return self.read_u32()
        return self.read_u64()

    @property
    def eof(self) -> bool:
        return self.pos >= len(self.data)


def encode_varint(i: int) -> bytes:
    if i < 0xfd:
        return bytes([i])
    if i <= 0xffff:
        return b"\xfd" + i.to_bytes(2, "little")
    if i <= 0xffffffff:
        return b"\xfe" + i.to_bytes(4, "little")
    return b"\xff" + i.to_bytes(8, "little")


# ------------------------------
# Raw transactions
# ------------------------------
def read_transaction(r: Reader) -> Transaction:
    tx = Transaction(version=r.read_u32())
    for _ in range(r.read_varint()):
        prev = r.read(32)[::-1].hex()
        index = r.read_u32()
        script = r.read(r.read_varint())
        tx.inputs.append(TxInput(prev, index, script, r.read_u32()))
    for _ in range(r.read_varint()):
        satoshis = r.read_u64()
        tx.outputs.append(TxOutput(satoshis, r.read(r.read_varint())))
    tx.locktime = r.read_u32()
    return tx

def parse_transaction(raw: bytes) -> Transaction:
    r = Reader(raw)
    tx = read_transaction(r)
    if not r.eof:
        raise ValueError("trailing bytes after transaction")
    return tx

def serialize_transaction(tx: Transaction) -> bytes:
    out = [tx.version.to_bytes(4, "little"), encode_varint(len(tx.inputs))]
    for i in tx.inputs:
        out.append(bytes.fromhex(i.prev_txid)[::-1])
        out.append(i.prev_index.to_bytes(4, "little"))
        out.append(encode_varint(len(i.unlocking_script)) + i.unlocking_script)
        out.append(i.sequence.to_bytes(4, "little"))
    out.append(encode_varint(len(tx.outputs)))
    out.extend(_serialize_output(o) for o in tx.outputs)
    out.append(tx.locktime.to_bytes(4, "little"))
    return b"".join(out)

def _serialize_output(o: TxOutput) -> bytes:
    return o.satoshis.to_bytes(8, "little") + encode_varint(len(o.locking_script)) + o.locking_script

def _outpoint(i: TxInput) -> bytes:
    return bytes.fromhex(i.prev_txid)[::-1] + i.prev_index.to_bytes(4, "little")

def signature_preimage(tx: Transaction, index: int, subscript: bytes, satoshis: int,
                        sighash: int = SIGHASH_ALL_FORKID) -> bytes:
    """
    What an input signature commits to, in the BIP143 layout BSV uses with
    the FORKID flag. Only SIGHASH_ALL is produced: every input and output is
    committed to. subscript is the locking script of the output being spent
    and satoshis its value.
    """
    txin = tx.inputs[index]
    return b"".join([
        tx.version.to_bytes(4, "little"),
        dbl_sha256(b"".join(_outpoint(i) for i in tx.inputs)),
        dbl_sha256(b"".join(i.sequence.to_bytes(4, "little") for i in tx.inputs)),
        _outpoint(txin),
        encode_varint(len(subscript)) + subscript,
        satoshis.to_bytes(8, "little"),
        txin.sequence.to_bytes(4, "little"),
        dbl_sha256(b"".join(_serialize_output(o) for o in tx.outputs)),
        tx.locktime.to_bytes(4, "little"),
        sighash.to_bytes(4, "little"),
    ])

def signature_hash(tx: Transaction, index: int, subscript: bytes, satoshis: int) -> bytes:
    return dbl_sha256(signature_preimage(tx, index, subscript, satoshis))


# ------------------------------
# BEEF
# ------------------------------
def _skip_bump(r: Reader) -> None:
    r.read_varint()                 # block height
    tree_height = r.read_u8()
    for _ in range(tree_height):
        for _ in range(r.read_varint()):
            r.read_varint()         # offset
            flags = r.read_u8()
            if not flags & 1:       # duplicate leaves carry no hash
                r.read(32)

def parse_beef(data: bytes) -> Beef:
    r = Reader(data)
    atomic_txid = None
    if r.data[:4] == ATOMIC_BEEF_PREFIX:
        r.read(4)
        atomic_txid = r.read(32)[::-1].hex()
    version = r.read_u32()
    if version not in (BEEF_V1, BEEF_V2):
        raise ValueError("not a BEEF payload (version %#x)" % version)
    for _ in range(r.read_varint()):
        _skip_bump(r)
    txs: List[Transaction] = []
    for _ in range(r.read_varint()):
        if version == BEEF_V2:
            fmt = r.read_u8()
            if fmt == TXID_ONLY:
                r.read(32)
                continue
            if fmt == RAW_TX_AND_BUMP_INDEX:
                r.read_varint()
            txs.append(read_transaction(r))
        else:
            txs.append(read_transaction(r))
            if r.read_u8():
                r.read_varint()
    return Beef(version=version, transactions=txs, atomic_txid=atomic_txid)

def serialize_beef(transactions: List[Transaction], atomic: bool = False) -> bytes:
    """BEEF V1 without merkle paths; atomic=True wraps it for the last transaction."""
    body = [BEEF_V1.to_bytes(4, "little"), encode_varint(0), encode_varint(len(transactions))]
    for tx in transactions:
        body.append(tx.serialize())
        body.append(b"\x00")
    beef = b"".join(body)
    if atomic:
        beef = ATOMIC_BEEF_PREFIX + bytes.fromhex(transactions[-1].txid)[::-1] + beef
    return beef

def is_beef(data: bytes) -> bool:
    head = bytes(data[:4])
    if head == ATOMIC_BEEF_PREFIX:
        return True
    return int.from_bytes(head, "little") in (BEEF_V1, BEEF_V2)

def subject_transaction(data: Union[bytes, bytearray, List[int]]) -> Transaction:
    """Subject transaction of a BEEF / Atomic BEEF payload, or a raw transaction."""
    data = bytes(data)
    if is_beef(data):
        return parse_beef(data).subject
    return parse_transaction(data)

def all_transactions(data: Union[bytes, bytearray, List[int]]) -> List[Transaction]:
    data = bytes(data)
    if is_beef(data):
        return parse_beef(data).transactions
    return [parse_transaction(data)]

def to_bytes(value: Union[bytes, bytearray, List[int], str]) -> bytes:
    """Transaction bytes as they arrive over JSON: int list, hex string or bytes."""
    if isinstance(value, str):
        return bytes.fromhex(value)
    return bytes(value)
