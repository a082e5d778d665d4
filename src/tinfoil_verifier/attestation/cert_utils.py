"""
Shared certificate utilities for AMD SEV-SNP chain verification.
"""

from datetime import datetime, timezone
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from ..platform import CryptoPlatform, default_platform
from .types import ChainValidationError

_PEM_END_MARKER = b'-----END CERTIFICATE-----'


def parse_pem_chain(pem_data: bytes, platform: Optional[CryptoPlatform] = None) -> List[x509.Certificate]:
    """
    Parse concatenated PEM certificates.

    Handles:
    - Concatenated PEM certificates
    - Leading/trailing whitespace and null bytes

    Args:
        pem_data: PEM-encoded certificate chain (bytes)
        platform: Parses each block; the default platform when omitted

    Returns:
        List of parsed certificates in order

    Raises:
        ChainValidationError: If parsing fails
    """
    platform = platform or default_platform()
    certs = []
    remaining = pem_data

    while remaining:
        # Strip leading whitespace and null bytes
        remaining = remaining.lstrip(b'\x00\n\r\t ')
        if not remaining:
            break

        end_pos = remaining.find(_PEM_END_MARKER)
        if end_pos == -1:
            raise ChainValidationError("Failed to parse PEM certificate: missing END marker")
        block = remaining[:end_pos + len(_PEM_END_MARKER)]

        certs.append(platform.load_certificate(block))

        remaining = remaining[end_pos + len(_PEM_END_MARKER):]

    return certs


def check_validity(cert: x509.Certificate, name: str, now: Optional[datetime] = None) -> None:
    """
    Check that ``now`` falls inside the certificate's validity window.

    Raises:
        ChainValidationError: If the certificate is expired or not yet valid
    """
    now = now or datetime.now(timezone.utc)
    if now < cert.not_valid_before_utc:
        raise ChainValidationError(
            f"{name} certificate not yet valid (not before {cert.not_valid_before_utc})"
        )
    if now > cert.not_valid_after_utc:
        raise ChainValidationError(
            f"{name} certificate expired (not after {cert.not_valid_after_utc})"
        )


def public_key_fingerprint(cert: x509.Certificate, platform: Optional[CryptoPlatform] = None) -> str:
    """Hex SHA-256 of the certificate's SubjectPublicKeyInfo."""
    spki = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return (platform or default_platform()).sha256(spki).hex()


def is_self_issued(cert: x509.Certificate) -> bool:
    return cert.issuer == cert.subject
