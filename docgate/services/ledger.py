"""Proof-of-delivery records for blockchain-attested grants.

Only the proof bundle is modelled; ``SyntheticLedger`` derives a transaction id
locally instead of talking to a chain. A real ledger client only has to provide
``record(order_id, recipient_email, document_hashes) -> (tx_id, proof)``.
"""
import hashlib
import json
import secrets
import time

from .tokens import make_opaque, resolve_opaque, signed_claims


def document_hash(document: dict) -> str:
    """Content-addressed digest: the declared checksum if any, else the canonical metadata."""
    if document.get('checksum'):
        material = str(document['checksum'])
    else:
        material = json.dumps(
            {'id': document.get('id'), 'name': document.get('name'), 'url': document.get('url')},
            sort_keys=True,
            separators=(',', ':'),
        )
    return hashlib.sha256(material.encode()).hexdigest()


def bundle_root(document_hashes: list[str]) -> str:
    return hashlib.sha256(''.join(document_hashes).encode()).hexdigest()


class SyntheticLedger:
    def record(self, order_id: str, recipient_email: str, document_hashes: list[str]) -> tuple[str, str]:
        root = bundle_root(document_hashes)
        ts = int(time.time())
        tx_id = '0x' + hashlib.sha256(f"{root}:{order_id}:{ts}:{secrets.token_hex(16)}".encode()).hexdigest()
        recipient = hashlib.sha256(recipient_email.lower().encode()).hexdigest()
        proof = make_opaque(
            json.dumps({
                'k': 'proof', 'tx': tx_id, 'root': root, 'recipient': recipient, 'count': len(document_hashes),
            }),
            ts=ts,
        )
        return tx_id, proof


def read_proof(proof: str) -> dict:
    """Check the proof signature and return its claims."""
    payload, ts = resolve_opaque(proof)
    claims = signed_claims(payload, 'proof')
    claims['issued_at'] = ts
    return claims
