"""
AMD SEV-SNP certificate chain (ARK > ASK > VCEK) and report signature verification.
"""

import logging
from datetime import datetime
from typing import Dict, Optional, Tuple, TypeAlias

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, utils
from cryptography.x509.oid import ObjectIdentifier

from ..platform import CryptoPlatform, SignatureEncoding, default_platform
from .abi_sevsnp import (
    ECDSA_RS_SIZE,
    SIGN_ECDSA_P384_SHA384,
    CHIP_ID_SIZE,
    Report,
    ReportSigner,
    TCBParts,
)
from .cert_utils import check_validity
from .types import ChainValidationError, SignatureVerificationError

logger = logging.getLogger(__name__)

# Type alias for certificate extensions
Extensions: TypeAlias = Dict[ObjectIdentifier, bytes]

SUPPORTED_PRODUCT = "Genoa"
ARK_COMMON_NAME = "ARK-Genoa"
ASK_COMMON_NAME = "SEV-Genoa"
VCEK_COMMON_NAME = "SEV-VCEK"
# DER IA5String "Genoa"
EXPECTED_PRODUCT_NAME = b'\x16\x05Genoa'

P384_COMPONENT_SIZE = 48


class SnpOid:
    """OID extensions for the VCEK, used to verify attestation report"""
    STRUCT_VERSION = ObjectIdentifier("1.3.6.1.4.1.3704.1.1")
    PRODUCT_NAME_1 = ObjectIdentifier("1.3.6.1.4.1.3704.1.2")
    BL_SPL = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.1")
    TEE_SPL = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.2")
    SNP_SPL = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.3")
    UCODE = ObjectIdentifier("1.3.6.1.4.1.3704.1.3.8")
    HWID = ObjectIdentifier("1.3.6.1.4.1.3704.1.4")
    CSP_ID = ObjectIdentifier("1.3.6.1.4.1.3704.1.5")


class CertificateChain:
    """Represents the SEV certificate chain (ARK > ASK > VCEK)"""
    ark: x509.Certificate
    ask: x509.Certificate
    vcek: x509.Certificate

    def __init__(
        self,
        ark: x509.Certificate,
        ask: x509.Certificate,
        vcek: x509.Certificate,
        platform: Optional[CryptoPlatform] = None,
    ):
        self.ark = ark
        self.ask = ask
        self.vcek = vcek
        self.platform = platform or default_platform()

    @classmethod
    async def from_report(cls, report: Report, anchors, fetcher) -> 'CertificateChain':
        """
        Build the chain for a report: ARK/ASK from ``anchors`` (a
        :class:`~.kds.TrustAnchorStore`) and the VCEK from ``fetcher``
        (a :class:`~.kds.VcekFetcher`).
        """
        if report.product_name != SUPPORTED_PRODUCT:
            raise ChainValidationError(
                f"This implementation only supports {SUPPORTED_PRODUCT} processors, got {report.product_name}"
            )

        if report.signer_info_parsed.signing_key != ReportSigner.VcekReportSigner:
            raise ChainValidationError("This implementation only supports VCEK signed reports")

        trust = await anchors.get(report.product_name)
        vcek = await fetcher.fetch(report.product_name, report.chip_id, report.reported_tcb)
        return cls(ark=trust.ark, ask=trust.ask, vcek=vcek, platform=fetcher.platform)

    def verify_chain(self, now: Optional[datetime] = None) -> None:
        """
        Validate certificate formats, validity windows and the signature links
        ARK -> ARK, ARK -> ASK, ASK -> VCEK.

        Raises:
            ChainValidationError: naming the certificate or link that failed
        """
        self._validate_ark_format()
        self._validate_ask_format()
        self._validate_vcek_format()

        for name, cert in (("ARK", self.ark), ("ASK", self.ask), ("VCEK", self.vcek)):
            check_validity(cert, name, now)

        for name, cert, issuer in (
            ("ARK self-signature", self.ark, self.ark),
            ("ASK signed by ARK", self.ask, self.ark),
            ("VCEK signed by ASK", self.vcek, self.ask),
        ):
            try:
                self.platform.verify_certificate_signature(cert, issuer)
            except ChainValidationError as e:
                raise ChainValidationError(f"{name} verification failed: {e}") from e

        logger.debug("AMD certificate chain verified")

    def _validate_ark_format(self):
        _validate_amd_certificate(self.ark, "ARK", ARK_COMMON_NAME)

    def _validate_ask_format(self):
        _validate_amd_certificate(self.ask, "ASK", ASK_COMMON_NAME)

    def _validate_vcek_format(self):
        """Validate the format of a VCEK certificate"""
        _validate_amd_certificate(self.vcek, "VCEK", VCEK_COMMON_NAME)

        if self.vcek.signature_algorithm_oid != x509.SignatureAlgorithmOID.RSASSA_PSS:
            raise ChainValidationError(
                f"VCEK certificate signature algorithm is not RSASSA_PSS but {self.vcek.signature_algorithm_oid}"
            )

        public_key = self.vcek.public_key()
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise ChainValidationError(
                f"VCEK certificate public key algorithm is not ECDSA but {self.vcek.public_key_algorithm_oid}"
            )
        if public_key.curve.name != "secp384r1":
            raise ChainValidationError(
                f"VCEK certificate public key curve is not secp384r1 but {public_key.curve.name}"
            )

        extensions = _get_certificate_extensions(self.vcek)
        if SnpOid.CSP_ID in extensions:
            raise ChainValidationError(f"unexpected CSP_ID in VCEK certificate: {extensions[SnpOid.CSP_ID]!r}")

        if SnpOid.HWID not in extensions or len(extensions[SnpOid.HWID]) != CHIP_ID_SIZE:
            raise ChainValidationError("missing HWID extension for VCEK certificate")

        product_name = extensions.get(SnpOid.PRODUCT_NAME_1)
        if product_name != EXPECTED_PRODUCT_NAME:
            raise ChainValidationError(f"unexpected PRODUCT_NAME_1 in VCEK certificate: {product_name!r}")

    def validate_report_binding(self, report: Report) -> None:
        """Bind the VCEK to the report's reported TCB and chip id."""
        self.validate_vcek_tcb(TCBParts.from_int(report.reported_tcb))

        if report.signer_info_parsed.mask_chip_key:
            if any(report.chip_id):
                raise ChainValidationError("mask_chip_key is set but CHIP_ID is not zeroed")
        else:
            self.validate_vcek_hwid(report.chip_id)

    def validate_vcek_tcb(self, tcb: TCBParts):
        """Validate the TCB extension in the VCEK certificate matches a given TCB"""
        extensions = _get_certificate_extensions(self.vcek)

        for oid, name, expected in (
            (SnpOid.BL_SPL, "BL_SPL", tcb.bl_spl),
            (SnpOid.TEE_SPL, "TEE_SPL", tcb.tee_spl),
            (SnpOid.SNP_SPL, "SNP_SPL", tcb.snp_spl),
            (SnpOid.UCODE, "UCODE", tcb.ucode_spl),
        ):
            if oid not in extensions:
                raise ChainValidationError(f"missing {name} extension for VCEK certificate")
            value = _decode_der_integer(extensions[oid])
            if value != expected:
                raise ChainValidationError(
                    f"{name} extension in VCEK certificate does not match reported TCB: {value} != {expected}"
                )

    def validate_vcek_hwid(self, chip_id: bytes):
        """Validate the HWID extension in the VCEK certificate matches a given chip id"""
        extensions = _get_certificate_extensions(self.vcek)
        if SnpOid.HWID not in extensions:
            raise ChainValidationError("missing HWID extension for VCEK certificate")
        if extensions[SnpOid.HWID] != chip_id:
            raise ChainValidationError(
                f"HWID extension in VCEK certificate does not match chip_id: "
                f"{extensions[SnpOid.HWID].hex()} != {chip_id.hex()}"
            )


## HELPER FUNCTIONS

def _get_certificate_extensions(cert: x509.Certificate) -> Extensions:
    """Raw values of the vendor (unrecognized) extensions of a certificate"""
    extensions = {}
    for ext in cert.extensions:
        if isinstance(ext.value, x509.UnrecognizedExtension):
            extensions[ext.oid] = ext.value.value
    return extensions

def _decode_der_integer(der_bytes: bytes) -> int:
    """Decode a DER-encoded INTEGER"""
    if len(der_bytes) < 2 or der_bytes[0] != 0x02:
        raise ChainValidationError(f"Invalid DER INTEGER: {der_bytes.hex()}")

    length = der_bytes[1]
    if len(der_bytes) != 2 + length:
        raise ChainValidationError(f"Invalid DER INTEGER length: {der_bytes.hex()}")

    return int.from_bytes(der_bytes[2:2 + length], byteorder='big')

def _validate_amd_certificate(cert: x509.Certificate, name: str, common_name: str) -> None:
    if cert.version != x509.Version.v3:
        raise ChainValidationError(f"{name} certificate version is not 3 but {cert.version}")
    if not _validate_amd_location(cert.issuer):
        raise ChainValidationError(f"{name} certificate issuer is not a valid AMD location")
    if not _validate_amd_location(cert.subject):
        raise ChainValidationError(f"{name} certificate subject is not a valid AMD location")

    cns = cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    cn = cns[0].value if len(cns) == 1 else None
    if cn != common_name:
        raise ChainValidationError(
            f"{name} certificate subject common name is not {common_name} but {cn}"
        )

def _validate_amd_location(name: x509.Name) -> bool:
    """Validate that the certificate name matches AMD's expected location.

    Returns:
        bool: True if all fields are singletons with the expected values
    """
    expected = (
        (x509.NameOID.COUNTRY_NAME, "country", "US"),
        (x509.NameOID.LOCALITY_NAME, "locality", "Santa Clara"),
        (x509.NameOID.STATE_OR_PROVINCE_NAME, "state", "CA"),
        (x509.NameOID.ORGANIZATION_NAME, "organization", "Advanced Micro Devices"),
        (x509.NameOID.ORGANIZATIONAL_UNIT_NAME, "organizational unit", "Engineering"),
    )
    for oid, field_name, value in expected:
        values = [attr.value for attr in name.get_attributes_for_oid(oid)]
        if len(values) != 1:
            logger.debug("Expected exactly one %s, got %d", field_name, len(values))
            return False
        if values[0] != value:
            logger.debug("Unexpected %s value: %r, expected %r", field_name, values[0], value)
            return False
    return True


def split_signature(signature: bytes) -> Tuple[int, int]:
    """
    Split an AMD report signature into big-endian (r, s).

    Each component is 72 bytes (0x48) in AMD's little-endian format.
    """
    r_bytes = bytes(reversed(signature[0:ECDSA_RS_SIZE]))
    s_bytes = bytes(reversed(signature[ECDSA_RS_SIZE:2 * ECDSA_RS_SIZE]))
    r = int.from_bytes(r_bytes.lstrip(b'\x00'), byteorder='big')
    s = int.from_bytes(s_bytes.lstrip(b'\x00'), byteorder='big')
    return r, s

def encode_der_signature(r: int, s: int) -> bytes:
    return utils.encode_dss_signature(r, s)

def encode_raw_signature(r: int, s: int, size: int = P384_COMPONENT_SIZE) -> bytes:
    try:
        return r.to_bytes(size, byteorder='big') + s.to_bytes(size, byteorder='big')
    except OverflowError as e:
        raise SignatureVerificationError(f"Signature component exceeds {size} bytes") from e

def encode_signature(signature: bytes, encoding: SignatureEncoding) -> bytes:
    r, s = split_signature(signature)
    if encoding == SignatureEncoding.RAW:
        return encode_raw_signature(r, s)
    return encode_der_signature(r, s)


def verify_report_signature(
    vcek: x509.Certificate,
    report: Report,
    platform: Optional[CryptoPlatform] = None,
) -> None:
    """
    Verify the attestation report signature using VCEK's public key.

    Raises:
        SignatureVerificationError: If the algorithm is unsupported or the
            signature does not verify
    """
    platform = platform or default_platform()

    if report.signature_algo != SIGN_ECDSA_P384_SHA384:
        raise SignatureVerificationError(f"Unknown SignatureAlgo: {report.signature_algo}")

    public_key = vcek.public_key()
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise SignatureVerificationError("VCEK doesn't contain an EC public key")

    encoded = encode_signature(report.signature, platform.signature_encoding)
    try:
        ok = platform.verify_report_signature(public_key, encoded, report.signed_data)
    except Exception as e:
        raise SignatureVerificationError(f"Attestation signature verification failed: {e}") from e
    if not ok:
        raise SignatureVerificationError("Attestation signature verification failed")


def verify_attestation(chain: CertificateChain, report: Report, now: Optional[datetime] = None) -> None:
    """Verify attestation report with the certificate chain"""
    chain.verify_chain(now)
    verify_report_signature(chain.vcek, report, chain.platform)
