"""
AMD SEV-SNP attestation document handling.

This module provides the high-level entry point for hardware attestation:
fetching the enclave's attestation document and turning it into a verified
:class:`Verification` (measurement, TLS key fingerprint, HPKE key).
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

import httpx

from ..config import ATTESTATION_ENDPOINT, DEFAULT_HTTP_TIMEOUT
from .abi_sevsnp import Report, parse_report
from .kds import TrustAnchorStore, VcekFetcher
from .types import (
    AttestationError,
    FetchError,
    HPKE_KEY_SIZE,
    Measurement,
    ParseError,
    PredicateType,
    TLS_KEY_FP_SIZE,
    Verification,
)
from .utils import decode_body, safe_gzip_decompress
from .validate import ValidationOptions, default_validation_options, validate_report
from .verify import CertificateChain, verify_attestation

logger = logging.getLogger(__name__)


def _predicate_type(value: str) -> Union[PredicateType, str]:
    try:
        return PredicateType(value)
    except ValueError:
        return value


@dataclass
class Document:
    """Represents an attestation document"""
    format: Union[PredicateType, str]
    body: str

    @classmethod
    def from_dict(cls, doc_dict: dict) -> "Document":
        try:
            return cls(format=_predicate_type(doc_dict["format"]), body=doc_dict["body"])
        except (KeyError, TypeError) as e:
            raise ParseError(f"Invalid attestation document: {e}") from e

    async def verify(
        self,
        anchors: TrustAnchorStore,
        fetcher: VcekFetcher,
        validation_options: Optional[ValidationOptions] = None,
        now: Optional[datetime] = None,
    ) -> Verification:
        """
        Checks the attestation document against its trust root
        and returns the inner measurements
        """
        if self.format == PredicateType.SEV_GUEST_V1:
            return await verify_sev_attestation_v1(self.body, anchors, fetcher, validation_options, now)
        elif self.format == PredicateType.SEV_GUEST_V2:
            return await verify_sev_attestation_v2(self.body, anchors, fetcher, validation_options, now)
        raise AttestationError(f"Unsupported attestation format: {self.format}")


async def verify_attestation_json(
    json_data: Union[str, bytes],
    anchors: TrustAnchorStore,
    fetcher: VcekFetcher,
    validation_options: Optional[ValidationOptions] = None,
) -> Verification:
    """Verifies an attestation document in JSON format and returns the inner measurements"""
    try:
        doc_dict = json.loads(json_data)
    except ValueError as e:
        raise ParseError(f"Attestation document is not valid JSON: {e}") from e
    return await Document.from_dict(doc_dict).verify(anchors, fetcher, validation_options)


async def fetch_attestation(
    host: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    endpoint: str = ATTESTATION_ENDPOINT,
) -> Document:
    """Retrieves the attestation document from a given enclave hostname"""
    url = f"https://{host}{endpoint}"
    try:
        if client is not None:
            response = await client.get(url, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as owned:
                response = await owned.get(url)
        response.raise_for_status()
        doc_dict = response.json()
    except httpx.HTTPError as e:
        raise FetchError(f"Failed to fetch attestation from {url}: {e}") from e
    except ValueError as e:
        raise FetchError(f"Attestation response from {url} is not JSON: {e}") from e

    return Document.from_dict(doc_dict)


async def verify_sev_attestation_v1(
    attestation_doc: str,
    anchors: TrustAnchorStore,
    fetcher: VcekFetcher,
    validation_options: Optional[ValidationOptions] = None,
    now: Optional[datetime] = None,
) -> Verification:
    """Verify a legacy (uncompressed) SEV attestation document."""
    report = await verify_sev_report(
        attestation_doc, False, anchors, fetcher, validation_options, now
    )

    # v1 enclaves put the hex TLS key fingerprint in report_data as text
    try:
        kfp = report.report_data.decode("ascii")
    except UnicodeDecodeError as e:
        raise ParseError(f"report_data is not an ASCII key fingerprint: {e}") from e

    return Verification(
        measurement=Measurement(type=PredicateType.SEV_GUEST_V1, registers=[report.measurement.hex()]),
        public_key_fp=kfp,
    )


async def verify_sev_attestation_v2(
    attestation_doc: str,
    anchors: TrustAnchorStore,
    fetcher: VcekFetcher,
    validation_options: Optional[ValidationOptions] = None,
    now: Optional[datetime] = None,
) -> Verification:
    """Verify a gzip-compressed SEV attestation document."""
    report = await verify_sev_report(
        attestation_doc, True, anchors, fetcher, validation_options, now
    )

    keys = report.report_data
    tls_key_fp = keys[0:TLS_KEY_FP_SIZE]
    hpke_public_key = keys[TLS_KEY_FP_SIZE:TLS_KEY_FP_SIZE + HPKE_KEY_SIZE]

    return Verification(
        measurement=Measurement(type=PredicateType.SEV_GUEST_V2, registers=[report.measurement.hex()]),
        public_key_fp=tls_key_fp.hex(),
        hpke_public_key=hpke_public_key.hex(),
    )


def decode_report(attestation_doc: str, is_compressed: bool = True) -> Report:
    """Decode and parse an attestation document body without verifying it."""
    att_doc_bytes = decode_body(attestation_doc)
    if is_compressed:
        att_doc_bytes = safe_gzip_decompress(att_doc_bytes)
    return parse_report(att_doc_bytes)


async def verify_sev_report(
    attestation_doc: str,
    is_compressed: bool,
    anchors: TrustAnchorStore,
    fetcher: VcekFetcher,
    validation_options: Optional[ValidationOptions] = None,
    now: Optional[datetime] = None,
) -> Report:
    """Verify SEV attestation document and return the parsed report.

    Args:
        attestation_doc: Base64-encoded attestation document
        is_compressed: Whether the document is gzip-compressed
        anchors: Source of the ARK/ASK certificates
        fetcher: Source of the VCEK certificate
        validation_options: Custom validation options; uses module defaults if None
        now: Time used for certificate validity checks; current time if None

    Raises:
        ParseError, ChainValidationError, SignatureVerificationError,
        PolicyViolationError, FetchError
    """
    options = validation_options if validation_options is not None else default_validation_options

    report = decode_report(attestation_doc, is_compressed)
    logger.debug("Parsed SEV-SNP report v%d for %s", report.version, report.product_name)

    chain = await CertificateChain.from_report(report, anchors, fetcher)
    verify_attestation(chain, report, now)
    validate_report(report, chain, options)

    logger.debug("SEV-SNP report verified, measurement %s", report.measurement.hex())
    return report


def from_snp_digest(snp_digest: str) -> Measurement:
    """
    Convert an SNP launch digest string to a measurement.

    Example:
        measurement = from_snp_digest("abcdef...")
        measurement.assert_equal(verification.measurement)
    """
    return Measurement(type=PredicateType.SEV_GUEST_V2, registers=[snp_digest.lower()])
