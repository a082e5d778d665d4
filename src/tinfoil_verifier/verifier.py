"""
Verification orchestrator.

Combines the two independent trust chains for an enclave:

* hardware: the enclave's SEV-SNP attestation report, signed by AMD
  (ARK > ASK > VCEK), yields the running measurement and the enclave's
  TLS / HPKE key material;
* provenance: the latest release digest of the config repo and its Sigstore
  bundle yield the measurement the public build produced.

``Verifier.verify()`` runs both branches concurrently, compares the two
measurements and records every step in a :class:`VerificationDocument`.
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

import httpx

from .attestation.attestation import Document, fetch_attestation
from .attestation.kds import TrustAnchorStore, VcekFetcher
from .attestation.types import (
    FetchError,
    Measurement,
    Verification,
    compare_measurements,
    measurement_fingerprint,
)
from .attestation.validate import ValidationOptions
from .cache import CertificateCache, DiskCertificateCache
from .config import VerifierConfig
from .github import fetch_attestation_bundle, fetch_latest_digest
from .platform import CryptoPlatform, default_platform
from .sigstore import verify_attestation as verify_provenance

logger = logging.getLogger(__name__)

ROUTERS_URL = "https://atc.tinfoil.sh/routers?platform=snp"


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class VerificationStep(str, Enum):
    FETCH_DIGEST = "fetchDigest"
    VERIFY_CODE = "verifyCode"
    VERIFY_ENCLAVE = "verifyEnclave"
    COMPARE_MEASUREMENTS = "compareMeasurements"


@dataclass(frozen=True)
class StepState:
    status: StepStatus = StepStatus.PENDING
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "StepState":
        return cls(StepStatus.SUCCESS)

    @classmethod
    def failed(cls, error: BaseException) -> "StepState":
        return cls(StepStatus.FAILED, str(error) or type(error).__name__)

    def to_dict(self) -> dict:
        d = {"status": self.status.value}
        if self.error is not None:
            d["error"] = self.error
        return d


def _pending_steps() -> Dict[VerificationStep, StepState]:
    return {step: StepState() for step in VerificationStep}


def _empty_measurement() -> Measurement:
    return Measurement(type="", registers=[])


@dataclass
class VerificationDocument:
    """The externally visible result of one ``Verifier.verify()`` call."""
    config_repo: str
    enclave_host: str
    release_digest: str = ""
    code_measurement: Measurement = field(default_factory=_empty_measurement)
    enclave_measurement: Verification = field(
        default_factory=lambda: Verification(measurement=_empty_measurement(), public_key_fp="")
    )
    tls_public_key: str = ""
    hpke_public_key: str = ""
    code_fingerprint: str = ""
    enclave_fingerprint: str = ""
    security_verified: bool = False
    steps: Dict[VerificationStep, StepState] = field(default_factory=_pending_steps)

    @property
    def selected_router_endpoint(self) -> str:
        return self.enclave_host

    def to_dict(self) -> dict:
        return {
            "configRepo": self.config_repo,
            "enclaveHost": self.enclave_host,
            "releaseDigest": self.release_digest,
            "codeMeasurement": self.code_measurement.to_dict(),
            "enclaveMeasurement": self.enclave_measurement.to_dict(),
            "tlsPublicKey": self.tls_public_key,
            "hpkePublicKey": self.hpke_public_key,
            "codeFingerprint": self.code_fingerprint,
            "enclaveFingerprint": self.enclave_fingerprint,
            "selectedRouterEndpoint": self.selected_router_endpoint,
            "securityVerified": self.security_verified,
            "steps": {step.value: self.steps[step].to_dict() for step in VerificationStep},
        }


@dataclass
class _VerificationState:
    """Accumulates results across the pipeline of one verify() call."""
    config_repo: str
    enclave_host: str
    steps: Dict[VerificationStep, StepState] = field(default_factory=_pending_steps)
    digest: str = ""
    code_measurement: Optional[Measurement] = None
    enclave: Optional[Verification] = None

    def mark(self, step: VerificationStep, state: StepState) -> None:
        self.steps[step] = state
        if state.status == StepStatus.FAILED:
            logger.info("Verification step %s failed: %s", step.value, state.error)
        else:
            logger.info("Verification step %s %s", step.value, state.status.value)

    def to_document(self, security_verified: bool) -> VerificationDocument:
        doc = VerificationDocument(
            config_repo=self.config_repo,
            enclave_host=self.enclave_host,
            release_digest=self.digest,
            security_verified=security_verified,
            steps=dict(self.steps),
        )
        if self.code_measurement is not None:
            doc.code_measurement = self.code_measurement
            doc.code_fingerprint = measurement_fingerprint(self.code_measurement)
        if self.enclave is not None:
            doc.enclave_measurement = self.enclave
            doc.enclave_fingerprint = measurement_fingerprint(self.enclave.measurement)
            doc.tls_public_key = self.enclave.public_key_fp or ""
            doc.hpke_public_key = self.enclave.hpke_public_key or ""
        return doc


async def fetch_router_address(client: Optional[httpx.AsyncClient] = None, url: str = ROUTERS_URL) -> str:
    """
    Fetches the list of available routers and returns a randomly selected address.
    """
    try:
        if client is not None:
            response = await client.get(url)
        else:
            async with httpx.AsyncClient() as owned:
                response = await owned.get(url)
        response.raise_for_status()
        routers = response.json()
    except httpx.HTTPError as e:
        raise FetchError(f"Failed to fetch router list: {e}") from e
    except ValueError as e:
        raise FetchError(f"Invalid router list response: {e}") from e

    if not routers:
        raise FetchError("No routers found in the response")
    return random.choice(routers)


def _host_of(server: str) -> str:
    if "://" in server:
        return urlparse(server).hostname or ""
    return server


class Verifier:
    """
    Verifies that an enclave runs the code released from ``config.repo``.

    Every network collaborator can be replaced; the defaults use the
    endpoints from :class:`VerifierConfig`.
    """

    def __init__(
        self,
        config: Optional[VerifierConfig] = None,
        *,
        server_url: Optional[str] = None,
        platform: Optional[CryptoPlatform] = None,
        cache: Optional[CertificateCache] = None,
        client: Optional[httpx.AsyncClient] = None,
        validation_options: Optional[ValidationOptions] = None,
        attestation_fetcher: Optional[Callable[[str], Awaitable[Document]]] = None,
        digest_fetcher: Optional[Callable[[str], Awaitable[str]]] = None,
        bundle_fetcher: Optional[Callable[[str, str], Awaitable[str]]] = None,
        provenance_verifier: Optional[Callable[[str, str, str], Measurement]] = None,
        anchors: Optional[TrustAnchorStore] = None,
        vcek_fetcher: Optional[VcekFetcher] = None,
    ):
        self.config = config or VerifierConfig()
        self.enclave_host = _host_of(server_url) if server_url else self.config.enclave_host
        self.config_repo = self.config.repo
        self.platform = platform or default_platform()
        self.validation_options = validation_options
        self.client = client
        timeout = self.config.http_timeout

        self.anchors = anchors or TrustAnchorStore(
            source=self.config.amd_cert_chain_source,
            pem_path=self.config.amd_cert_chain_path,
            ark_fingerprint=self.config.ark_fingerprint,
            base_url=self.config.kds_base_url,
            client=client,
            timeout=timeout,
            platform=self.platform,
        )
        self.vcek_fetcher = vcek_fetcher or VcekFetcher(
            cache=cache if cache is not None else DiskCertificateCache(self.config.cache_dir),
            platform=self.platform,
            base_url=self.config.kds_base_url,
            client=client,
            timeout=timeout,
        )
        self._fetch_attestation = attestation_fetcher or functools.partial(
            fetch_attestation,
            client=client,
            timeout=timeout,
            endpoint=self.config.attestation_endpoint,
        )
        self._fetch_digest = digest_fetcher or functools.partial(
            fetch_latest_digest,
            client=client,
            api_base_url=self.config.github_api_base_url,
            download_base_url=self.config.github_download_base_url,
            timeout=timeout,
        )
        self._fetch_bundle = bundle_fetcher or functools.partial(
            fetch_attestation_bundle,
            client=client,
            api_base_url=self.config.github_api_base_url,
            timeout=timeout,
            cache_dir=self.config.cache_dir,
        )
        self._verify_provenance = provenance_verifier or verify_provenance

        self._verification_document: Optional[VerificationDocument] = None

    @property
    def verification_document(self) -> Optional[VerificationDocument]:
        """The document of the most recent verify() call, successful or not."""
        return self._verification_document

    def get_verification_document(self) -> Optional[VerificationDocument]:
        return self._verification_document

    async def verify(self) -> Verification:
        """
        Run the full verification pipeline.

        Returns:
            The enclave's hardware verification result

        Raises:
            AttestationError: the first failure of any step; the failed
                document is available from ``verification_document``
        """
        state = _VerificationState(config_repo=self.config_repo, enclave_host=self.enclave_host)
        try:
            if not state.enclave_host:
                self.enclave_host = state.enclave_host = await fetch_router_address(self.client)
            await self._run_branches(state)
            await self._step(state, VerificationStep.COMPARE_MEASUREMENTS, self._compare(state))
        except BaseException:
            self._verification_document = state.to_document(security_verified=False)
            raise

        self._verification_document = state.to_document(security_verified=True)
        logger.info("Enclave %s verified against %s@%s", state.enclave_host, state.config_repo, state.digest)
        return state.enclave

    async def _run_branches(self, state: _VerificationState) -> None:
        code = asyncio.ensure_future(self._code_branch(state))
        enclave = asyncio.ensure_future(
            self._step(state, VerificationStep.VERIFY_ENCLAVE, self._verify_enclave(state))
        )
        tasks = (code, enclave)
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for task in tasks:
            if task in done and not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def _code_branch(self, state: _VerificationState) -> None:
        await self._step(state, VerificationStep.FETCH_DIGEST, self._fetch_release_digest(state))
        await self._step(state, VerificationStep.VERIFY_CODE, self._verify_code(state))

    async def _step(self, state: _VerificationState, step: VerificationStep, coro: Awaitable[None]) -> None:
        logger.debug("Verification step %s started", step.value)
        try:
            await coro
        except Exception as e:
            state.mark(step, StepState.failed(e))
            raise
        state.mark(step, StepState.success())

    async def _fetch_release_digest(self, state: _VerificationState) -> None:
        state.digest = await self._fetch_digest(state.config_repo)

    async def _verify_code(self, state: _VerificationState) -> None:
        bundle = await self._fetch_bundle(state.config_repo, state.digest)
        # sigstore verification is blocking (TUF refresh, Rekor checks)
        state.code_measurement = await asyncio.to_thread(
            self._verify_provenance, bundle, state.digest, state.config_repo
        )

    async def _verify_enclave(self, state: _VerificationState) -> None:
        document = await self._fetch_attestation(state.enclave_host)
        state.enclave = await document.verify(self.anchors, self.vcek_fetcher, self.validation_options)

    async def _compare(self, state: _VerificationState) -> None:
        compare_measurements(state.code_measurement, state.enclave.measurement)
