import pytest

from tinfoil_verifier.config import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_REPO,
    KDS_BASE_URL,
    VerifierConfig,
)


def test_defaults():
    config = VerifierConfig()
    assert config.repo == DEFAULT_REPO
    assert config.kds_base_url == KDS_BASE_URL
    assert config.http_timeout == DEFAULT_HTTP_TIMEOUT
    assert config.enclave_host == ""
    assert config.amd_cert_chain_source == "embedded"
    assert config.amd_cert_chain_path is None
    assert config.ark_fingerprint is None
    assert config.cache_dir


def test_from_env_overrides():
    config = VerifierConfig.from_env({
        "TINFOIL_REPO": "owner/repo",
        "TINFOIL_ENCLAVE_HOST": "enclave.example",
        "TINFOIL_HTTP_TIMEOUT": "2.5",
        "TINFOIL_AMD_CERT_CHAIN_SOURCE": "kds",
        "TINFOIL_AMD_CERT_CHAIN_PATH": "/etc/tinfoil/amd.pem",
        "TINFOIL_KDS_BASE_URL": "",
        "UNRELATED": "x",
    })
    assert config.repo == "owner/repo"
    assert config.enclave_host == "enclave.example"
    assert config.http_timeout == 2.5
    assert config.amd_cert_chain_source == "kds"
    assert config.amd_cert_chain_path == "/etc/tinfoil/amd.pem"
    assert config.kds_base_url == KDS_BASE_URL


def test_from_env_reads_process_environment(monkeypatch):
    monkeypatch.setenv("TINFOIL_ARK_FINGERPRINT", "ab" * 32)
    assert VerifierConfig.from_env().ark_fingerprint == "ab" * 32


def test_invalid_timeout():
    with pytest.raises(ValueError, match="TINFOIL_HTTP_TIMEOUT"):
        VerifierConfig.from_env({"TINFOIL_HTTP_TIMEOUT": "soon"})
