"""
Ed25519 signing helpers built on PyNaCl.

Licenses are signed by an issuing authority; receipts are signed by the
node that debited the usage. Keys cross module boundaries as the
fixed-width PublicKey / Signature identifiers.
"""

import logging
from typing import Optional

from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey

from ...common.types import PublicKey, ShardId, Signature
from ..entities.license import License, LicenseTerms

logger = logging.getLogger(__name__)


def public_key_of(signing_key: SigningKey) -> PublicKey:
    return PublicKey(bytes(signing_key.verify_key))


def verify_key_of(public_key: PublicKey) -> VerifyKey:
    return VerifyKey(public_key.value)


def sign(signing_key: SigningKey, payload: bytes) -> Signature:
    return Signature(signing_key.sign(payload).signature)


def verify(public_key: PublicKey, payload: bytes, signature: Signature) -> bool:
    """
    Check a detached signature.

    Returns:
        True only if ``signature`` is a valid signature of ``payload``
        under ``public_key``
    """
    try:
        verify_key_of(public_key).verify(payload, signature.value)
    except CryptoError:
        return False
    return True


class LicenseAuthority:
    """
    Issuer of shard licenses.

    A node never holds the authority key, so it cannot license itself.
    """

    def __init__(self, signing_key: Optional[SigningKey] = None):
        self.signing_key: SigningKey = signing_key or SigningKey.generate()
        self.public_key: PublicKey = public_key_of(self.signing_key)

    @classmethod
    def from_seed(cls, seed: bytes) -> "LicenseAuthority":
        if len(seed) != 32:
            raise ValueError("Seed must be exactly 32 bytes")
        return cls(SigningKey(seed))

    def issue(
        self,
        shard_id: ShardId,
        node_pubkey: PublicKey,
        expiry_timestamp: int,
        terms: LicenseTerms,
    ) -> License:
        """
        Sign a license for one shard and one node.

        Args:
            shard_id: Licensed shard
            node_pubkey: Node the license is bound to
            expiry_timestamp: Unix seconds after which the license is void
            terms: Consumption terms carried alongside the signature

        Returns:
            Signed license
        """
        payload = License.signing_payload(shard_id, node_pubkey, expiry_timestamp)
        logger.debug("Issuing license for shard %s to node %s", shard_id, node_pubkey)
        return License(
            shard_id=shard_id,
            node_pubkey=node_pubkey,
            expiry_timestamp=expiry_timestamp,
            signature=sign(self.signing_key, payload),
            terms=terms,
        )
