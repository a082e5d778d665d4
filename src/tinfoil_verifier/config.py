"""
Verifier configuration.

Every value has a production default; ``VerifierConfig.from_env()`` lets the
``TINFOIL_*`` environment variables override them.
"""

import os
from dataclasses import dataclass, field, fields
from typing import Mapping, Optional

import platformdirs

DEFAULT_REPO = "tinfoilsh/confidential-model-router"
KDS_BASE_URL = "https://kds-proxy.tinfoil.sh/vcek/v1"
GITHUB_API_BASE_URL = "https://api-github-proxy.tinfoil.sh"
GITHUB_DOWNLOAD_BASE_URL = "https://github-proxy.tinfoil.sh"
ATTESTATION_ENDPOINT = "/.well-known/tinfoil-attestation"
DEFAULT_HTTP_TIMEOUT = 15.0

_ENV_PREFIX = "TINFOIL_"


def _default_cache_dir() -> str:
    return platformdirs.user_cache_dir("tinfoil", "tinfoil")


@dataclass
class VerifierConfig:
    repo: str = DEFAULT_REPO
    enclave_host: str = ""
    kds_base_url: str = KDS_BASE_URL
    github_api_base_url: str = GITHUB_API_BASE_URL
    github_download_base_url: str = GITHUB_DOWNLOAD_BASE_URL
    attestation_endpoint: str = ATTESTATION_ENDPOINT
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    cache_dir: str = field(default_factory=_default_cache_dir)
    # "embedded" uses the ARK/ASK shipped with the package; "kds" fetches cert_chain
    amd_cert_chain_source: str = "embedded"
    # PEM file holding the AMD ASK and ARK; overrides amd_cert_chain_source
    amd_cert_chain_path: Optional[str] = None
    # hex SHA-256 of the ARK SubjectPublicKeyInfo; required for overrides
    # when no embedded ARK is available
    ark_fingerprint: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "VerifierConfig":
        """
        Build a config from ``TINFOIL_<FIELD>`` variables, e.g.
        ``TINFOIL_KDS_BASE_URL`` or ``TINFOIL_HTTP_TIMEOUT``.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        env = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.name == "http_timeout":
                try:
                    overrides[f.name] = float(raw)
                except ValueError as e:
                    raise ValueError(f"Invalid {_ENV_PREFIX}HTTP_TIMEOUT value: {raw!r}") from e
            else:
                overrides[f.name] = raw
        return cls(**overrides)
