from .attestation import (
    Document,
    fetch_attestation,
    verify_attestation_json,
    verify_sev_attestation_v1,
    verify_sev_attestation_v2,
    verify_sev_report,
    from_snp_digest,
)
from .types import (
    Measurement,
    PredicateType,
    Verification,
    compare_measurements,
    measurement_fingerprint,
)

__all__ = [
    'Document',
    'fetch_attestation',
    'verify_sev_attestation_v1',
    'verify_sev_attestation_v2',
    'verify_attestation_json',
    'verify_sev_report',
    'Measurement',
    'PredicateType',
    'Verification',
    'compare_measurements',
    'measurement_fingerprint',
    'from_snp_digest',
]
