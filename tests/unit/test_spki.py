"""
Unit tests for the SPKI and TLS adapters.

Certificates are generated with cryptography at test time, so the expected
hash is computed independently from the key rather than from the adapter.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from cryptography.x509.oid import NameOID

from pinguard.adapters.spki import (
    chain_hashes,
    spki_hash_from_der,
    spki_hash_from_pem,
    spki_hash_from_public_key,
)
from pinguard.adapters.tls import observed_hashes, verify_httpx_response
from pinguard.domain.errors import PinMismatchError
from pinguard.domain.models import Verdict
from pinguard.domain.pins import PublicKeyHash
from pinguard.evaluator import PinEvaluator
from pinguard.railway import ErrorCode, ResultAssertions
from pinguard.store import ConfigurationStore
from tests.factories import API_HOST, CLIENT_VERSION, encode, host_document, make_hash, policy_document


def _certificate(common_name: str = API_HOST) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    return cert, key


def _expected(key: ec.EllipticCurvePrivateKey) -> PublicKeyHash:
    spki = key.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
    return PublicKeyHash(hashlib.sha256(spki).digest())


@pytest.fixture(scope="module")
def leaf() -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    return _certificate()


# ─────────────────────── SPKI hashing ───────────────────────


class TestSpkiHash:
    def test_from_public_key(self, leaf) -> None:
        cert, key = leaf
        assert spki_hash_from_public_key(cert.public_key()) == _expected(key)

    def test_from_der(self, leaf) -> None:
        cert, key = leaf
        ResultAssertions.assert_success_value(spki_hash_from_der(cert.public_bytes(Encoding.DER)), _expected(key))

    def test_from_pem_bytes_and_str(self, leaf) -> None:
        cert, key = leaf
        pem = cert.public_bytes(Encoding.PEM)
        ResultAssertions.assert_success_value(spki_hash_from_pem(pem), _expected(key))
        ResultAssertions.assert_success_value(spki_hash_from_pem(pem.decode("ascii")), _expected(key))

    def test_reissued_certificate_with_same_key_keeps_pin(self, leaf) -> None:
        _, key = leaf
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, API_HOST)])
        now = datetime.now(UTC)
        reissued = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=90))
            .sign(key, hashes.SHA256())
        )
        ResultAssertions.assert_success_value(
            spki_hash_from_der(reissued.public_bytes(Encoding.DER)),
            _expected(key),
        )

    def test_garbage_der_is_failure(self) -> None:
        ResultAssertions.assert_failure(spki_hash_from_der(b"\x30\x03garbage"), ErrorCode.INVALID_PIN)

    def test_chain_hashes_skips_unparseable(self, leaf) -> None:
        cert, key = leaf
        other, other_key = _certificate("intermediate.example.com")
        chain = [cert.public_bytes(Encoding.DER), b"junk", other.public_bytes(Encoding.DER)]
        assert chain_hashes(chain) == [_expected(key), _expected(other_key)]


# ─────────────────────── TLS adapter ───────────────────────


def _evaluator(pins: tuple[PublicKeyHash, PublicKeyHash]) -> PinEvaluator:
    store = ConfigurationStore()
    store.refresh(encode(policy_document(hosts={API_HOST: host_document(*pins)})))
    return PinEvaluator(store)


def _ssl_object(*certs: x509.Certificate) -> MagicMock:
    ssl_object = MagicMock()
    ssl_object.get_verified_chain.return_value = [c.public_bytes(Encoding.DER) for c in certs]
    return ssl_object


def _response(ssl_object: MagicMock | None) -> httpx.Response:
    extensions = {}
    if ssl_object is not None:
        stream = MagicMock()
        stream.get_extra_info.side_effect = lambda name: ssl_object if name == "ssl_object" else None
        extensions["network_stream"] = stream
    return httpx.Response(
        200,
        request=httpx.Request("GET", f"https://{API_HOST}/v1/me"),
        extensions=extensions,
    )


class TestObservedHashes:
    def test_hashes_verified_chain_leaf_first(self, leaf) -> None:
        cert, key = leaf
        root, root_key = _certificate("root.example.com")
        assert observed_hashes(_ssl_object(cert, root)) == [_expected(key), _expected(root_key)]

    def test_falls_back_to_peer_certificate(self, leaf) -> None:
        cert, key = leaf
        ssl_object = MagicMock()
        ssl_object.get_verified_chain.return_value = []
        ssl_object.getpeercert.return_value = cert.public_bytes(Encoding.DER)
        assert observed_hashes(ssl_object) == [_expected(key)]


class TestVerifyHttpxResponse:
    def test_pinned_key_passes(self, leaf) -> None:
        cert, key = leaf
        evaluator = _evaluator((_expected(key), make_hash("backup")))

        result = verify_httpx_response(_response(_ssl_object(cert)), evaluator, CLIENT_VERSION, "device-1")

        assert result.verdict is Verdict.PIN_MATCH

    def test_pinned_intermediate_passes(self, leaf) -> None:
        cert, _ = leaf
        intermediate, intermediate_key = _certificate("ca.example.com")
        evaluator = _evaluator((_expected(intermediate_key), make_hash("backup")))

        result = verify_httpx_response(
            _response(_ssl_object(cert, intermediate)), evaluator, CLIENT_VERSION, "device-1"
        )

        assert result.verdict is Verdict.PIN_MATCH

    def test_unpinned_key_raises(self, leaf) -> None:
        cert, _ = leaf
        evaluator = _evaluator((make_hash("a"), make_hash("b")))

        with pytest.raises(PinMismatchError) as excinfo:
            verify_httpx_response(_response(_ssl_object(cert)), evaluator, CLIENT_VERSION, "device-1")

        assert excinfo.value.hostname == API_HOST

    def test_missing_tls_stream_fails_closed_for_pinned_host(self) -> None:
        evaluator = _evaluator((make_hash("a"), make_hash("b")))

        with pytest.raises(PinMismatchError):
            verify_httpx_response(_response(None), evaluator, CLIENT_VERSION, "device-1")
