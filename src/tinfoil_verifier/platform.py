"""
Cryptographic platform used by the verification logic.

Everything that touches certificate parsing, signature primitives or
digests goes through a :class:`CryptoPlatform`, so the chain and report
checks are written once and the backend is chosen at construction time.
"""

import hashlib
import logging
import warnings
from enum import Enum
from typing import Protocol

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa, utils
from cryptography.utils import CryptographyDeprecationWarning

from .attestation.types import ChainValidationError

logger = logging.getLogger(__name__)

P384_COMPONENT_SIZE = 48


class SignatureEncoding(str, Enum):
    """Encoding of an ECDSA signature expected by a platform"""
    DER = "der"
    RAW = "raw"  # fixed-width r || s


class CryptoPlatform(Protocol):
    signature_encoding: SignatureEncoding

    def load_certificate(self, data: bytes) -> x509.Certificate:
        ...

    def verify_certificate_signature(self, cert: x509.Certificate, issuer: x509.Certificate) -> None:
        ...

    def verify_report_signature(self, public_key: ec.EllipticCurvePublicKey, signature: bytes, data: bytes) -> bool:
        ...

    def sha256(self, data: bytes) -> bytes:
        ...


class CryptographyPlatform:
    """Default platform backed by the ``cryptography`` package."""

    def __init__(self, signature_encoding: SignatureEncoding = SignatureEncoding.DER):
        self.signature_encoding = signature_encoding

    def load_certificate(self, data: bytes) -> x509.Certificate:
        """Parse a PEM or DER certificate.

        Raises:
            ChainValidationError: If the bytes are not a certificate
        """
        try:
            if data.lstrip().startswith(b"-----BEGIN"):
                return x509.load_pem_x509_certificate(data)
            # cryptography 46+ emits a deprecation warning for non-positive serial numbers,
            # which AMD KDS certificates can carry.
            with warnings.catch_warnings():
                warnings.filterwarnings(
                    "ignore",
                    message=r"Parsed a serial number which wasn't positive",
                    category=CryptographyDeprecationWarning,
                )
                return x509.load_der_x509_certificate(data)
        except ValueError as e:
            raise ChainValidationError(f"Failed to parse certificate: {e}") from e

    def verify_certificate_signature(self, cert: x509.Certificate, issuer: x509.Certificate) -> None:
        """Check that ``cert`` was signed by ``issuer``'s key.

        Supports RSA (PKCS#1 v1.5 and PSS) and ECDSA issuers.

        Raises:
            ChainValidationError: If the signature does not verify
        """
        if cert.issuer != issuer.subject:
            raise ChainValidationError(
                f"issuer name {cert.issuer.rfc4514_string()} does not match signer subject "
                f"{issuer.subject.rfc4514_string()}"
            )

        public_key = issuer.public_key()
        try:
            if isinstance(public_key, rsa.RSAPublicKey):
                public_key.verify(
                    cert.signature,
                    cert.tbs_certificate_bytes,
                    cert.signature_algorithm_parameters,
                    cert.signature_hash_algorithm,
                )
            elif isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(
                    cert.signature,
                    cert.tbs_certificate_bytes,
                    cert.signature_algorithm_parameters,
                )
            else:
                raise ChainValidationError(
                    f"unsupported issuer key type {type(public_key).__name__}"
                )
        except InvalidSignature as e:
            raise ChainValidationError("certificate signature is invalid") from e
        except (UnsupportedAlgorithm, ValueError, TypeError) as e:
            raise ChainValidationError(f"certificate signature could not be checked: {e}") from e

    def verify_report_signature(self, public_key: ec.EllipticCurvePublicKey, signature: bytes, data: bytes) -> bool:
        """Verify an ECDSA P-384 / SHA-384 signature in this platform's encoding."""
        if self.signature_encoding == SignatureEncoding.RAW:
            if len(signature) != 2 * P384_COMPONENT_SIZE:
                logger.debug("Raw signature has unexpected length %d", len(signature))
                return False
            r = int.from_bytes(signature[:P384_COMPONENT_SIZE], byteorder="big")
            s = int.from_bytes(signature[P384_COMPONENT_SIZE:], byteorder="big")
            signature = utils.encode_dss_signature(r, s)

        try:
            public_key.verify(signature, data, ec.ECDSA(hashes.SHA384()))
        except InvalidSignature:
            return False
        return True

    def sha256(self, data: bytes) -> bytes:
        return hashlib.sha256(data).digest()


_default_platform = None


def default_platform() -> CryptoPlatform:
    global _default_platform
    if _default_platform is None:
        _default_platform = CryptographyPlatform()
    return _default_platform
