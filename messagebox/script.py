"""
Bitcoin script pieces used by the client: chunk parsing, minimal pushes,
P2PKH locking scripts and the PushDrop token template.

A PushDrop script locks a UTXO to a public key while carrying arbitrary data
fields that are dropped from the stack before evaluation ends:

    <pubkey> OP_CHECKSIG <field 0> ... <field n-1> OP_2DROP ... [OP_DROP]

and is spent with a lone <signature> push.
"""

from typing import List, Optional, Tuple

from .keys import h160, sha256, ProtocolID
from .transaction import SIGHASH_ALL_FORKID, Transaction, TxOutput, signature_preimage

OP_0 = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_1NEGATE = 0x4f
OP_1 = 0x51
OP_16 = 0x60
OP_DROP = 0x75
OP_2DROP = 0x6d
OP_DUP = 0x76
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac

Chunk = Tuple[int, Optional[bytes]]


# ------------------------------
# Chunks
# ------------------------------
def parse_chunks(script: bytes) -> List[Chunk]:
    chunks: List[Chunk] = []
    i = 0
    n = len(script)
    while i < n:
        op = script[i]
        i += 1
        if 0 < op < OP_PUSHDATA1:
            size = op
        elif op == OP_PUSHDATA1:
            size = script[i]
            i += 1
        elif op == OP_PUSHDATA2:
            size = int.from_bytes(script[i:i + 2], "little")
            i += 2
        elif op == OP_PUSHDATA4:
            size = int.from_bytes(script[i:i + 4], "little")
            i += 4
        else:
            chunks.append((op, None))
            continue
        if i + size > n:
            raise ValueError("push of %d bytes runs past end of script" % size)
        chunks.append((op, script[i:i + size]))
        i += size
    return chunks

def push_data(data: bytes) -> bytes:
    n = len(data)
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    if n <= 0xff:
        return bytes([OP_PUSHDATA1, n]) + data
    if n <= 0xffff:
        return bytes([OP_PUSHDATA2]) + n.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + n.to_bytes(4, "little") + data

def minimal_push(data: bytes) -> bytes:
    """Smallest encoding of a data push (OP_0, OP_1..OP_16, OP_1NEGATE where possible)."""
    if len(data) == 0:
        return bytes([OP_0])
    if len(data) == 1:
        if 1 <= data[0] <= 16:
            return bytes([OP_1 + data[0] - 1])
        if data[0] == 0x81:
            return bytes([OP_1NEGATE])
    return push_data(data)

def chunk_value(chunk: Chunk) -> bytes:
    """Data carried by a push chunk, undoing the minimal-push substitutions."""
    op, data = chunk
    if data is not None:
        return data
    if op == OP_0:
        return b""
    if op == OP_1NEGATE:
        return b"\x81"
    if OP_1 <= op <= OP_16:
        return bytes([op - OP_1 + 1])
    raise ValueError("opcode %#x is not a data push" % op)


# ------------------------------
# P2PKH
# ------------------------------
def p2pkh_locking_script(pub_compressed: bytes) -> bytes:
    return p2pkh_from_hash160(h160(pub_compressed))

def p2pkh_from_hash160(pkh: bytes) -> bytes:
    return bytes([OP_DUP, OP_HASH160, 20]) + pkh + bytes([OP_EQUALVERIFY, OP_CHECKSIG])

def p2pkh_unlocking_script(signature: bytes, pub_compressed: bytes) -> bytes:
    return push_data(signature) + push_data(pub_compressed)


# ------------------------------
# PushDrop
# ------------------------------
def pushdrop_script(locking_pub: bytes, fields: List[bytes]) -> bytes:
    out = [push_data(locking_pub), bytes([OP_CHECKSIG])]
    out.extend(minimal_push(f) for f in fields)
    remaining = len(fields)
    while remaining > 1:
        out.append(bytes([OP_2DROP]))
        remaining -= 2
    if remaining:
        out.append(bytes([OP_DROP]))
    return b"".join(out)

def decode_pushdrop(script: bytes) -> Tuple[bytes, List[bytes]]:
    """Returns (locking public key, fields); raises ValueError if not a PushDrop script."""
    chunks = parse_chunks(script)
    if len(chunks) < 3 or chunks[0][1] is None or chunks[1][0] != OP_CHECKSIG:
        raise ValueError("not a PushDrop locking script")
    fields: List[bytes] = []
    for chunk in chunks[2:]:
        if chunk[0] in (OP_DROP, OP_2DROP):
            break
        fields.append(chunk_value(chunk))
    else:
        raise ValueError("PushDrop script has no drop section")
    return chunks[0][1], fields

async def pushdrop_lock(wallet, fields: List[bytes], protocol_id: ProtocolID, key_id: str,
                        counterparty: str, include_signature: bool = True) -> bytes:
    """
    Build a PushDrop locking script whose key is our child key for
    (protocol_id, key_id, counterparty). With include_signature the wallet
    signs the concatenated fields and the signature is appended as a last
    field, so indexers can check who minted the token.
    """
    locking_pub = await wallet.get_public_key(protocol_id=protocol_id, key_id=key_id,
                                              counterparty=counterparty, for_self=True)
    fields = list(fields)
    if include_signature:
        signature = await wallet.create_signature(b"".join(fields), protocol_id=protocol_id,
                                                  key_id=key_id, counterparty=counterparty)
        fields.append(bytes(signature))
    return pushdrop_script(bytes.fromhex(locking_pub), fields)

async def pushdrop_unlock(wallet, tx: Transaction, index: int, source: TxOutput, protocol_id: ProtocolID,
                          key_id: str, counterparty: str) -> bytes:
    """
    Unlocking script for input index of tx, which spends the PushDrop output
    source. The wallet signs with the same child key pushdrop_lock() locked
    to. create_signature() hashes once more, so handing it sha256(preimage)
    yields a signature over the double-SHA256 sighash nodes check.
    """
    preimage = signature_preimage(tx, index, source.locking_script, source.satoshis)
    signature = await wallet.create_signature(sha256(preimage), protocol_id=protocol_id,
                                              key_id=key_id, counterparty=counterparty)
    return push_data(bytes(signature) + bytes([SIGHASH_ALL_FORKID]))
