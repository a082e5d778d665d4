from .attestation.types import (
    AttestationError,
    ChainValidationError,
    DigestMismatchError,
    FetchError,
    FormatMismatchError,
    Measurement,
    MeasurementMismatchError,
    ParseError,
    PolicyViolationError,
    PredicateType,
    ProvenanceError,
    SignatureVerificationError,
    Verification,
)
from .config import VerifierConfig
from .verifier import (
    StepState,
    StepStatus,
    VerificationDocument,
    VerificationStep,
    Verifier,
)

__all__ = [
    "Verifier",
    "VerifierConfig",
    "VerificationDocument",
    "VerificationStep",
    "StepState",
    "StepStatus",
    "Measurement",
    "PredicateType",
    "Verification",
    "AttestationError",
    "ParseError",
    "ChainValidationError",
    "PolicyViolationError",
    "SignatureVerificationError",
    "FormatMismatchError",
    "MeasurementMismatchError",
    "ProvenanceError",
    "DigestMismatchError",
    "FetchError",
]
