"""
SPKI adapter — certificates and public keys → PublicKeyHash.

Adapter layer — uses cryptography (PyCA) to re-encode the certificate's
public key as a DER SubjectPublicKeyInfo and hash it with SHA-256:

  certificate (DER / PEM)
    → cryptography: x509.load_*_x509_certificate()
    → public_key().public_bytes(DER, SubjectPublicKeyInfo)
    → sha256 → PublicKeyHash

Parsing failures are captured at this boundary via Result.from_computation().
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable

import structlog
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from pinguard.domain.pins import PublicKeyHash
from pinguard.railway import ErrorCode, Result

log = structlog.get_logger()


def spki_hash_from_public_key(key: PublicKeyTypes) -> PublicKeyHash:
    """SHA-256 of the key's DER SubjectPublicKeyInfo encoding."""
    spki = key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
    return PublicKeyHash(hashlib.sha256(spki).digest())


def spki_hash_from_der(cert_der: bytes) -> Result[PublicKeyHash]:
    return Result.from_computation(
        lambda: spki_hash_from_public_key(x509.load_der_x509_certificate(cert_der).public_key()),
        ErrorCode.INVALID_PIN,
        "Cannot derive SPKI hash from DER certificate",
    )


def spki_hash_from_pem(pem: bytes | str) -> Result[PublicKeyHash]:
    data = pem.encode("ascii") if isinstance(pem, str) else pem
    return Result.from_computation(
        lambda: spki_hash_from_public_key(x509.load_pem_x509_certificate(data).public_key()),
        ErrorCode.INVALID_PIN,
        "Cannot derive SPKI hash from PEM certificate",
    )


def chain_hashes(chain_der: Iterable[bytes]) -> list[PublicKeyHash]:
    """
    Hash every certificate of a presented chain, leaf first.

    A certificate that cannot be parsed is skipped (and logged); it can never
    match a pin, so dropping it only narrows what the evaluator sees.
    """
    hashes: list[PublicKeyHash] = []
    for position, der in enumerate(chain_der):
        result = spki_hash_from_der(der)
        if result.is_success():
            hashes.append(result.value())
        else:
            log.warning("spki.certificate_skipped", position=position, error=result.error().message)
    return hashes
