"""
AMD Key Distribution Service (KDS) access.

Fetches the per-chip VCEK leaf certificate and supplies the ASK/ARK trust
anchors, which default to the certificates embedded in the package.
VCEK downloads go through an injected :class:`CertificateCache`; concurrent
requests for the same key share a single in-flight download.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from cryptography import x509

from ..cache import CacheKey, CertificateCache, MemoryCertificateCache
from ..config import KDS_BASE_URL, DEFAULT_HTTP_TIMEOUT
from ..platform import CryptoPlatform, default_platform
from . import genoa_cert_chain
from .abi_sevsnp import TCBParts
from .cert_utils import is_self_issued, parse_pem_chain, public_key_fingerprint
from .types import ChainValidationError, FetchError

logger = logging.getLogger(__name__)


def vcek_cert_url(product_name: str, chip_id: bytes, reported_tcb: int, base_url: str = KDS_BASE_URL) -> str:
    """Generate the VCEK certificate URL based on the product name, chip ID, and reported TCB"""
    parts = TCBParts.from_int(reported_tcb)
    return (
        f"{base_url}/{product_name}/{chip_id.hex()}"
        f"?blSPL={parts.bl_spl}&teeSPL={parts.tee_spl}&snpSPL={parts.snp_spl}&ucodeSPL={parts.ucode_spl}"
    )


def cert_chain_url(product_name: str, base_url: str = KDS_BASE_URL) -> str:
    return f"{base_url}/{product_name}/cert_chain"


async def _http_get(client: Optional[httpx.AsyncClient], url: str, timeout: float) -> bytes:
    try:
        if client is not None:
            response = await client.get(url, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as owned:
                response = await owned.get(url)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise FetchError(f"Failed to fetch {url}: {e}") from e
    return response.content


class VcekFetcher:
    """Downloads and caches VCEK certificates."""

    def __init__(
        self,
        cache: Optional[CertificateCache] = None,
        platform: Optional[CryptoPlatform] = None,
        base_url: str = KDS_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        self.cache = cache if cache is not None else MemoryCertificateCache()
        self.platform = platform or default_platform()
        self.base_url = base_url
        self.client = client
        self.timeout = timeout
        self._inflight: Dict[CacheKey, asyncio.Future] = {}

    async def fetch(self, product_name: str, chip_id: bytes, reported_tcb: int) -> x509.Certificate:
        """
        Return the VCEK for a chip at a reported TCB.

        Raises:
            FetchError: If the download fails
            ChainValidationError: If the downloaded bytes are not a certificate
        """
        key = CacheKey.for_report(product_name, chip_id, reported_tcb)
        task = self._inflight.get(key)
        if task is None:
            url = vcek_cert_url(product_name, chip_id, reported_tcb, self.base_url)
            task = asyncio.ensure_future(self._load(key, url))
            self._inflight[key] = task
            task.add_done_callback(lambda _: self._inflight.pop(key, None))
        else:
            logger.debug("Joining in-flight VCEK fetch for %s", key.filename)
        # shield so one cancelled caller does not cancel the shared download
        return await asyncio.shield(task)

    async def _load(self, key: CacheKey, url: str) -> x509.Certificate:
        cached = self.cache.get(key)
        if cached is not None:
            try:
                cert = self.platform.load_certificate(cached)
                logger.debug("VCEK cache hit for %s", key.filename)
                return cert
            except ChainValidationError as e:
                logger.warning("Evicting corrupt VCEK cache entry %s: %s", key.filename, e)
                self.cache.evict(key)

        logger.debug("Fetching VCEK from %s", url)
        data = await _http_get(self.client, url, self.timeout)
        cert = self.platform.load_certificate(data)
        self.cache.set(key, data)
        return cert


ANCHOR_SOURCE_EMBEDDED = "embedded"
ANCHOR_SOURCE_KDS = "kds"
ANCHOR_SOURCES = (ANCHOR_SOURCE_EMBEDDED, ANCHOR_SOURCE_KDS)

# Products whose anchors ship with the package
EMBEDDED_PRODUCT = "Genoa"


@dataclass(frozen=True)
class TrustAnchors:
    """AMD root (ARK) and intermediate (ASK) certificates for one product."""
    ark: x509.Certificate
    ask: x509.Certificate

    @classmethod
    def from_pem(
        cls,
        pem_data: bytes,
        ark_fingerprint: Optional[str] = None,
        platform: Optional[CryptoPlatform] = None,
    ) -> "TrustAnchors":
        """
        Build anchors from a PEM bundle holding the ASK and the ARK in any order.

        Raises:
            ChainValidationError: If the bundle does not hold exactly one
                self-issued root and one intermediate, or the ARK key does
                not match ``ark_fingerprint``
        """
        certs = parse_pem_chain(pem_data, platform)
        if len(certs) != 2:
            raise ChainValidationError(
                f"AMD certificate chain must contain exactly 2 certificates, got {len(certs)}"
            )
        roots = [c for c in certs if is_self_issued(c)]
        intermediates = [c for c in certs if not is_self_issued(c)]
        if len(roots) != 1 or len(intermediates) != 1:
            raise ChainValidationError("AMD certificate chain must contain one ARK and one ASK")

        anchors = cls(ark=roots[0], ask=intermediates[0])
        if ark_fingerprint is not None:
            actual = public_key_fingerprint(anchors.ark, platform)
            if actual.lower() != ark_fingerprint.lower():
                raise ChainValidationError(
                    f"ARK public key fingerprint mismatch: expected {ark_fingerprint}, got {actual}"
                )
        return anchors

    @classmethod
    def embedded(cls, platform: Optional[CryptoPlatform] = None) -> "TrustAnchors":
        """
        The Genoa ARK and ASK shipped in :mod:`.genoa_cert_chain`.

        Raises:
            ChainValidationError: If the embedded certificates are missing
        """
        if not genoa_cert_chain.ARK_CERT or not genoa_cert_chain.ASK_CERT:
            raise ChainValidationError("Embedded AMD Genoa certificate chain is not populated")
        return cls.from_pem(genoa_cert_chain.ASK_CERT + b"\n" + genoa_cert_chain.ARK_CERT, platform=platform)


class TrustAnchorStore:
    """
    Supplies the ARK/ASK anchors used to verify VCEK certificates.

    By default the anchors are the certificates embedded in the package.
    A PEM file (``pem_path``) or the KDS ``cert_chain`` endpoint
    (``source="kds"``) replace them only when the loaded ARK matches a
    known root key: ``ark_fingerprint`` when given, otherwise the embedded
    ARK. Anchors are kept for the lifetime of the store.
    """

    def __init__(
        self,
        source: str = ANCHOR_SOURCE_EMBEDDED,
        pem_path: Optional[str] = None,
        ark_fingerprint: Optional[str] = None,
        base_url: str = KDS_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        platform: Optional[CryptoPlatform] = None,
    ):
        if source not in ANCHOR_SOURCES:
            raise ValueError(f"Unknown AMD trust anchor source {source!r}, expected one of {ANCHOR_SOURCES}")
        self.source = source
        self.pem_path = pem_path
        self.ark_fingerprint = ark_fingerprint
        self.base_url = base_url
        self.client = client
        self.timeout = timeout
        self.platform = platform or default_platform()
        self._anchors: Dict[str, TrustAnchors] = {}
        self._lock = asyncio.Lock()

    @property
    def is_override(self) -> bool:
        return bool(self.pem_path) or self.source != ANCHOR_SOURCE_EMBEDDED

    async def get(self, product_name: str) -> TrustAnchors:
        """
        Raises:
            ChainValidationError: If no anchors for ``product_name`` can be
                established against a known ARK key
            FetchError: If the KDS download fails
        """
        async with self._lock:
            anchors = self._anchors.get(product_name)
            if anchors is None:
                anchors = await self._load(product_name)
                self._anchors[product_name] = anchors
            return anchors

    async def _load(self, product_name: str) -> TrustAnchors:
        if not self.is_override:
            if product_name != EMBEDDED_PRODUCT:
                raise ChainValidationError(
                    f"No embedded AMD trust anchors for product {product_name}; "
                    "configure a pinned certificate chain"
                )
            anchors = TrustAnchors.embedded(self.platform)
            if self.ark_fingerprint is not None:
                self._check_pin(anchors, self.ark_fingerprint)
            return anchors

        pin = self._expected_ark_fingerprint()
        anchors = TrustAnchors.from_pem(await self._read(product_name), platform=self.platform)
        self._check_pin(anchors, pin)
        return anchors

    def _expected_ark_fingerprint(self) -> str:
        if self.ark_fingerprint is not None:
            return self.ark_fingerprint
        try:
            return public_key_fingerprint(TrustAnchors.embedded(self.platform).ark, self.platform)
        except ChainValidationError as e:
            raise ChainValidationError(
                f"An AMD certificate chain from {self._describe_source()} requires ark_fingerprint: {e}"
            ) from e

    def _check_pin(self, anchors: TrustAnchors, expected: str) -> None:
        actual = public_key_fingerprint(anchors.ark, self.platform)
        if actual.lower() != expected.lower():
            raise ChainValidationError(
                f"ARK from {self._describe_source()} is not a trusted AMD root: "
                f"expected key {expected}, got {actual}"
            )

    def _describe_source(self) -> str:
        if self.pem_path:
            return self.pem_path
        if self.source == ANCHOR_SOURCE_KDS:
            return f"KDS at {self.base_url}"
        return "the embedded certificate chain"

    async def _read(self, product_name: str) -> bytes:
        if self.pem_path:
            logger.debug("Loading AMD trust anchors from %s", self.pem_path)
            try:
                with open(os.path.expanduser(self.pem_path), "rb") as fh:
                    return fh.read()
            except OSError as e:
                raise ChainValidationError(f"Failed to read AMD certificate chain {self.pem_path}: {e}") from e

        url = cert_chain_url(product_name, self.base_url)
        logger.debug("Fetching AMD trust anchors from %s", url)
        return await _http_get(self.client, url, self.timeout)
