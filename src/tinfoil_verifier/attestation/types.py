"""
Shared types, errors, and protocol constants for attestation.

This module is the canonical source for types used across the SEV-SNP,
provenance and orchestration modules. It has no intra-package dependencies,
so any module can import from it without risk of circular imports.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union


# =============================================================================
# Protocol-level constants
# =============================================================================

TLS_KEY_FP_SIZE = 32   # SHA-256 TLS public key fingerprint (bytes)
HPKE_KEY_SIZE = 32     # HPKE public key (bytes)

SEV_REGISTER_COUNT = 1           # [snp_measurement]


# =============================================================================
# Predicate types
# =============================================================================

class PredicateType(str, Enum):
    """Predicate types for attestation"""
    SEV_GUEST_V1 = "https://tinfoil.sh/predicate/sev-snp-guest/v1"  # Deprecated
    SEV_GUEST_V2 = "https://tinfoil.sh/predicate/sev-snp-guest/v2"
    SNP_TDX_MULTIPLATFORM_V1 = "https://tinfoil.sh/predicate/snp-tdx-multiplatform/v1"


# Predicate types that carry an SNP launch measurement and may be compared
# with each other.
SNP_COMPATIBLE_TYPES = frozenset(t.value for t in PredicateType)


# =============================================================================
# Errors
# =============================================================================

class AttestationError(Exception):
    """Base class for attestation errors"""
    pass

class ParseError(AttestationError):
    """Raised when an attestation report is malformed"""
    pass

class ChainValidationError(AttestationError):
    """Raised when the ARK > ASK > VCEK chain does not validate"""
    pass

class PolicyViolationError(AttestationError):
    """Raised when a report does not satisfy the validation options"""
    pass

class UnauthorizedCapabilityError(PolicyViolationError):
    """Raised when the report enables something the required policy does not allow"""
    pass

class MissingRequirementError(PolicyViolationError):
    """Raised when the report lacks a restriction or feature the required policy mandates"""
    pass

class SignatureVerificationError(AttestationError):
    """Raised when the report signature cannot be verified"""
    pass

class FormatMismatchError(AttestationError):
    """Raised when attestation formats don't match"""

    def __init__(self, message: str = "Attestation formats do not match"):
        super().__init__(message)

class MeasurementMismatchError(AttestationError):
    """Raised when measurements don't match"""

    def __init__(self, message: str = "Measurements do not match"):
        super().__init__(message)

class ProvenanceError(AttestationError):
    """Raised when the code provenance bundle fails verification"""
    pass

class DigestMismatchError(ProvenanceError):
    """Raised when the provenance subject digest differs from the release digest"""
    pass

class FetchError(AttestationError):
    """Raised when an external collaborator (HTTP fetch) fails"""
    pass


# =============================================================================
# Data types
# =============================================================================

@dataclass
class Measurement:
    """Represents measurement data"""
    type: Union[PredicateType, str]
    registers: List[str] = field(default_factory=list)

    @property
    def type_uri(self) -> str:
        return self.type.value if isinstance(self.type, PredicateType) else self.type

    def fingerprint(self) -> str:
        return measurement_fingerprint(self)

    def assert_equal(self, other: 'Measurement') -> None:
        compare_measurements(self, other)

    def to_dict(self) -> dict:
        return {"type": self.type_uri, "registers": list(self.registers)}

    def __str__(self) -> str:
        """Returns a human-readable string representation of the measurement"""
        if len(self.registers) == SEV_REGISTER_COUNT:
            return f"Measurement(type={self.type_uri}, snp_measurement={self.registers[0][:16]}...)"
        return f"Measurement(type={self.type_uri}, registers={len(self.registers)} items)"


@dataclass
class Verification:
    """Represents hardware verification results"""
    measurement: Measurement
    public_key_fp: str
    hpke_public_key: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "measurement": self.measurement.to_dict(),
            "tlsPublicKeyFingerprint": self.public_key_fp,
            "hpkePublicKey": self.hpke_public_key or "",
        }


def _is_snp_compatible(type_uri: str) -> bool:
    return type_uri in SNP_COMPATIBLE_TYPES


def compare_measurements(a: Measurement, b: Measurement) -> None:
    """
    Checks that two measurements describe the same enclave image.

    Raises:
        FormatMismatchError: if the measurement types are incompatible
        MeasurementMismatchError: if the registers don't match
    """
    a_type, b_type = a.type_uri, b.type_uri
    if a_type != b_type and not (_is_snp_compatible(a_type) and _is_snp_compatible(b_type)):
        raise FormatMismatchError(
            f"Measurement types are incompatible: '{a_type}' vs '{b_type}'"
        )

    if len(a.registers) != len(b.registers) or a.registers != b.registers:
        raise MeasurementMismatchError("Measurement registers do not match")


def measurement_fingerprint(m: Measurement) -> str:
    """
    Returns the single register unchanged if there is only one, otherwise the
    SHA-256 of the predicate type and all registers.
    """
    if len(m.registers) == 1:
        return m.registers[0]

    all_data = m.type_uri + "".join(m.registers)
    return hashlib.sha256(all_data.encode()).hexdigest()
