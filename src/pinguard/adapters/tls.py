"""
TLS adapter — feed an established connection into the evaluator.

The pin check runs after the platform's own chain validation succeeded, so
only the verified chain is hashed. Works with anything exposing the ssl
module's SSLSocket / SSLObject API, including the connection underneath an
httpx response.
"""

from __future__ import annotations

import ssl

import httpx
import structlog

from pinguard.adapters.spki import chain_hashes
from pinguard.domain.models import EvaluationResult
from pinguard.domain.pins import PublicKeyHash
from pinguard.evaluator import PinEvaluator, raise_for_verdict

log = structlog.get_logger()


def observed_hashes(ssl_object: ssl.SSLSocket | ssl.SSLObject) -> list[PublicKeyHash]:
    """SPKI hashes of the verified chain, leaf first; the leaf alone if no chain is exposed."""
    chain = ssl_object.get_verified_chain()
    if not chain:
        leaf = ssl_object.getpeercert(binary_form=True)
        chain = [leaf] if leaf else []
    return chain_hashes(chain)


def verify_httpx_response(
    response: httpx.Response,
    evaluator: PinEvaluator,
    client_version: str,
    client_identifier: str,
) -> EvaluationResult:
    """
    Evaluate the TLS connection an httpx response arrived on.

    Raises PinMismatchError on an enforced mismatch. A response without a TLS
    stream (plain http, mocked transport) is evaluated with no observed keys,
    which pinned hosts treat as a malformed request.
    """
    hostname = response.request.url.host
    stream = response.extensions.get("network_stream")
    ssl_object = stream.get_extra_info("ssl_object") if stream is not None else None

    if ssl_object is None:
        log.warning("tls.no_ssl_object", hostname=hostname)
        hashes: list[PublicKeyHash] = []
    else:
        hashes = observed_hashes(ssl_object)

    result = evaluator.evaluate_connection(hostname, hashes, client_version, client_identifier)
    return raise_for_verdict(hostname, result)
