import json
import logging
import re
from typing import Union

from sigstore.errors import Error as SigstoreError
from sigstore.errors import VerificationError
from sigstore.models import Bundle
from sigstore.verify import Verifier
from sigstore.verify.policy import (
    AllOf,
    Certificate,
    ExtensionNotFound,
    GitHubWorkflowRepository,
    OIDCIssuer,
    _OIDC_GITHUB_WORKFLOW_REF_OID,
)

from .attestation.types import (
    DigestMismatchError,
    Measurement,
    PredicateType,
    ProvenanceError,
)

logger = logging.getLogger(__name__)

OIDC_ISSUER = "https://token.actions.githubusercontent.com"
IN_TOTO_PAYLOAD_TYPE = "application/vnd.in-toto+json"
TAG_REF_PATTERN = "^refs/tags/"

_HEX_DIGEST = re.compile(r"^[0-9a-fA-F]{64}$")

# predicate type -> predicate field holding the SNP launch measurement
_MEASUREMENT_FIELDS = {
    PredicateType.SEV_GUEST_V1: "measurement",
    PredicateType.SEV_GUEST_V2: "measurement",
    PredicateType.SNP_TDX_MULTIPLATFORM_V1: "snp_measurement",
}


class GitHubWorkflowRefPattern:
    """
    Verifies the certificate's GitHub Actions workflow ref using pattern matching.
    """
    def __init__(self, pattern: str) -> None:
        self._pattern = pattern

    def verify(self, cert: Certificate) -> None:
        try:
            ext = cert.extensions.get_extension_for_oid(_OIDC_GITHUB_WORKFLOW_REF_OID).value
        except ExtensionNotFound:
            raise VerificationError(
                f"Certificate does not contain GitHubWorkflowRef "
                f"({_OIDC_GITHUB_WORKFLOW_REF_OID.dotted_string}) extension"
            )
        ext_value = ext.value.decode()
        if not re.match(self._pattern, ext_value):
            raise VerificationError(
                f"Certificate's GitHubWorkflowRef does not match pattern "
                f"(got '{ext_value}', expected pattern '{self._pattern}')"
            )


def identity_policy(repo: str) -> AllOf:
    """Signer identity: a tag build of ``repo`` on GitHub Actions."""
    return AllOf([
        OIDCIssuer(OIDC_ISSUER),
        GitHubWorkflowRepository(repo),
        GitHubWorkflowRefPattern(TAG_REF_PATTERN),
    ])


def verify_attestation(bundle_json: Union[str, bytes], digest: str, repo: str) -> Measurement:
    """
    Verifies the attested measurements of an enclave image against a trusted root (Sigstore)
    and returns the measurement payload contained in the DSSE.

    Args:
        bundle_json: The bundle JSON data
        digest: The expected hex-encoded SHA256 digest of the DSSE payload subject
        repo: The repository name

    Returns:
        Measurement: The verified measurement data

    Raises:
        ProvenanceError: If verification fails
        DigestMismatchError: If the payload subject digest differs from ``digest``
    """
    if not _HEX_DIGEST.match(digest or ""):
        raise ProvenanceError(f"Expected digest must be 64 hex characters, got {digest!r}")

    try:
        verifier = Verifier.production()
        bundle = Bundle.from_json(bundle_json)
        # This verifies the signature on the DSSE envelope, applies the
        # certificate identity policy, and checks Rekor log consistency.
        payload_type, payload_bytes = verifier.verify_dsse(bundle, identity_policy(repo))
    except (SigstoreError, ValueError) as e:
        raise ProvenanceError(f"Sigstore bundle verification failed: {e}") from e

    if payload_type != IN_TOTO_PAYLOAD_TYPE:
        raise ProvenanceError(f"Unsupported payload type: {payload_type}. Only supports In-toto.")

    return measurement_from_payload(payload_bytes, digest)


def measurement_from_payload(payload_bytes: Union[str, bytes], digest: str) -> Measurement:
    """Check the in-toto statement's subject digest and extract its measurement."""
    try:
        statement = json.loads(payload_bytes)
        subject_digest = statement["subject"][0]["digest"]["sha256"]
        predicate_type = statement["predicateType"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise ProvenanceError(f"Malformed in-toto statement: {e}") from e

    if not isinstance(subject_digest, str) or subject_digest.lower() != digest.lower():
        raise DigestMismatchError(
            f"Provided digest does not match verified DSSE payload digest. "
            f"Expected: {digest}, Got: {subject_digest}"
        )

    try:
        predicate_type = PredicateType(predicate_type)
    except ValueError:
        raise ProvenanceError(f"Unsupported predicate type: {predicate_type}")

    predicate_fields = statement.get("predicate")
    if not isinstance(predicate_fields, dict):
        raise ProvenanceError("Payload does not contain predicate")

    field_name = _MEASUREMENT_FIELDS[predicate_type]
    value = predicate_fields.get(field_name)
    if not value:
        raise ProvenanceError(f"{predicate_type.value} predicate does not contain {field_name}")

    logger.debug("Provenance verified for digest %s", digest)
    return Measurement(type=predicate_type, registers=[value])
