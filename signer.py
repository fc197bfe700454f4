# signer.py
"""
Capacidad de firma. El material de claves nunca sale de aquí: el resto del
motor sólo ve `public_key` y `sign(tx)`.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import base58
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from errors import SigningFailure

logger = logging.getLogger(__name__)


class Signer:
    public_key: str

    def sign(self, transaction: VersionedTransaction) -> VersionedTransaction:
        raise NotImplementedError


class KeypairSigner(Signer):
    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair
        self.public_key = str(keypair.pubkey())

    @classmethod
    def from_base58(cls, secret: str) -> "KeypairSigner":
        # Private key como bs58 (estilo Phantom)
        try:
            kp = Keypair.from_bytes(base58.b58decode(secret))
        except ValueError as exc:
            raise SigningFailure("WALLET_PRIVATE_KEY inválida") from exc
        return cls(kp)

    def sign(self, transaction: VersionedTransaction) -> VersionedTransaction:
        try:
            return VersionedTransaction(transaction.message, [self._keypair])
        except Exception as exc:
            raise SigningFailure(f"no se pudo firmar: {exc!r}") from exc


def signature_of(transaction: VersionedTransaction) -> str:
    """La signature de una TX firmada se conoce antes de enviarla."""
    return str(transaction.signatures[0])


class SignerRegistry:
    """owner_id -> Signer."""

    def __init__(self, signers: Optional[Dict[str, Signer]] = None) -> None:
        self._signers: Dict[str, Signer] = dict(signers or {})

    def register(self, owner_id: str, signer: Signer) -> None:
        self._signers[owner_id] = signer

    def get(self, owner_id: str) -> Signer:
        signer = self._signers.get(owner_id)
        if signer is None:
            raise SigningFailure(f"sin signer para owner {owner_id}")
        return signer

    def owners(self) -> list[str]:
        return list(self._signers)
