import asyncio
import hashlib
import os

import httpx
import pytest
from cryptography.hazmat.primitives import serialization

from tinfoil_verifier.attestation.cert_utils import public_key_fingerprint
from tinfoil_verifier.attestation.kds import (
    TrustAnchors,
    TrustAnchorStore,
    VcekFetcher,
    cert_chain_url,
    vcek_cert_url,
)
from tinfoil_verifier.attestation.types import ChainValidationError, FetchError
from tinfoil_verifier.cache import CacheKey, DiskCertificateCache, MemoryCertificateCache
from tinfoil_verifier.platform import CryptographyPlatform

from conftest import DEFAULT_CHIP_ID, DEFAULT_TCB, certs_to_pem, generate_amd_pki, kds_transport


def test_vcek_cert_url():
    url = vcek_cert_url("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB, base_url="https://kds.example/vcek/v1")
    assert url == (
        f"https://kds.example/vcek/v1/Genoa/{DEFAULT_CHIP_ID.hex()}"
        "?blSPL=7&teeSPL=0&snpSPL=14&ucodeSPL=72"
    )


def test_cert_chain_url():
    assert cert_chain_url("Genoa", "https://kds.example/vcek/v1") == "https://kds.example/vcek/v1/Genoa/cert_chain"


def test_cache_key_filename():
    key = CacheKey.for_report("Genoa", b"\xab" * 64, DEFAULT_TCB)
    assert key.filename == f"VCEK_Genoa_{'ab' * 64}_480e000000000007.der"


class TestVcekFetcher:
    @pytest.mark.asyncio
    async def test_fetch_populates_cache(self, vcek, vcek_fetcher_factory):
        cache = MemoryCertificateCache()
        requests = []
        fetcher = vcek_fetcher_factory(cert=vcek, requests=requests, cache=cache)

        cert = await fetcher.fetch("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB)

        assert cert == vcek
        assert CacheKey.for_report("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB) in cache
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_cache_hit_skips_network(self, vcek, vcek_fetcher_factory):
        cache = MemoryCertificateCache()
        cache.set(
            CacheKey.for_report("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB),
            vcek.public_bytes(serialization.Encoding.DER),
        )
        requests = []
        fetcher = vcek_fetcher_factory(requests=requests, cache=cache)

        assert await fetcher.fetch("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB) == vcek
        assert requests == []

    @pytest.mark.asyncio
    async def test_different_tcb_is_a_different_entry(self, vcek_fetcher_factory):
        cache = MemoryCertificateCache()
        requests = []
        fetcher = vcek_fetcher_factory(requests=requests, cache=cache)

        await fetcher.fetch("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB)
        await fetcher.fetch("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB + 1)

        assert len(cache) == 2
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_evicted_and_refetched(self, vcek, vcek_fetcher_factory, caplog):
        cache = MemoryCertificateCache()
        key = CacheKey.for_report("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB)
        cache.set(key, b"not a certificate")
        requests = []
        fetcher = vcek_fetcher_factory(cert=vcek, requests=requests, cache=cache)

        assert await fetcher.fetch("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB) == vcek

        assert len(requests) == 1
        assert cache.get(key) == vcek.public_bytes(serialization.Encoding.DER)
        assert "Evicting corrupt VCEK cache entry" in caplog.text

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_one_download(self, vcek):
        requests = []
        release = asyncio.Event()
        der = vcek.public_bytes(serialization.Encoding.DER)

        async def handler(request):
            requests.append(str(request.url))
            await release.wait()
            return httpx.Response(200, content=der)

        fetcher = VcekFetcher(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        tasks = [
            asyncio.ensure_future(fetcher.fetch("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB))
            for _ in range(5)
        ]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert len(requests) == 1
        assert all(cert == vcek for cert in results)

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        cache = MemoryCertificateCache()
        fetcher = VcekFetcher(cache=cache, client=client)

        with pytest.raises(FetchError, match="Failed to fetch"):
            await fetcher.fetch("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB)
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_garbage_response_is_not_cached(self):
        client = httpx.AsyncClient(transport=kds_transport(b"garbage"))
        cache = MemoryCertificateCache()
        fetcher = VcekFetcher(cache=cache, client=client)

        with pytest.raises(ChainValidationError):
            await fetcher.fetch("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB)
        assert len(cache) == 0


class TestDiskCertificateCache:
    def test_round_trip(self, tmp_path):
        cache = DiskCertificateCache(str(tmp_path / "certs"))
        key = CacheKey.for_report("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB)

        assert cache.get(key) is None
        cache.set(key, b"der-bytes")

        assert cache.get(key) == b"der-bytes"
        assert os.listdir(tmp_path / "certs") == [key.filename]

    def test_evict(self, tmp_path):
        cache = DiskCertificateCache(str(tmp_path))
        key = CacheKey.for_report("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB)
        cache.set(key, b"der-bytes")

        cache.evict(key)
        cache.evict(key)

        assert cache.get(key) is None

    def test_unwritable_directory_is_ignored(self, tmp_path, caplog):
        blocker = tmp_path / "file"
        blocker.write_bytes(b"")
        cache = DiskCertificateCache(str(blocker / "certs"))
        key = CacheKey.for_report("Genoa", DEFAULT_CHIP_ID, DEFAULT_TCB)

        cache.set(key, b"der-bytes")

        assert cache.get(key) is None
        assert "Could not write certificate cache entry" in caplog.text


class TestTrustAnchors:
    def test_from_kds_order(self, amd_pki):
        anchors = TrustAnchors.from_pem(amd_pki.pem)
        assert anchors.ark == amd_pki.ark
        assert anchors.ask == amd_pki.ask

    def test_from_reversed_order(self, amd_pki):
        anchors = TrustAnchors.from_pem(certs_to_pem([amd_pki.ark, amd_pki.ask]))
        assert anchors.ark == amd_pki.ark

    def test_fingerprint_pin(self, amd_pki):
        pin = public_key_fingerprint(amd_pki.ark)
        assert TrustAnchors.from_pem(amd_pki.pem, ark_fingerprint=pin.upper()).ark == amd_pki.ark

        with pytest.raises(ChainValidationError, match="ARK public key fingerprint mismatch"):
            TrustAnchors.from_pem(amd_pki.pem, ark_fingerprint="00" * 32)

    def test_wrong_count(self, amd_pki):
        with pytest.raises(ChainValidationError, match="exactly 2 certificates"):
            TrustAnchors.from_pem(certs_to_pem([amd_pki.ark]))

    def test_two_roots(self, amd_pki):
        with pytest.raises(ChainValidationError, match="one ARK and one ASK"):
            TrustAnchors.from_pem(certs_to_pem([amd_pki.ark, amd_pki.ark]))

    def test_truncated_pem(self, amd_pki):
        with pytest.raises(ChainValidationError, match="missing END marker"):
            TrustAnchors.from_pem(amd_pki.pem[:-40])


class RecordingPlatform(CryptographyPlatform):
    def __init__(self):
        super().__init__()
        self.loaded = 0
        self.hashed = 0

    def load_certificate(self, data):
        self.loaded += 1
        return super().load_certificate(data)

    def sha256(self, data):
        self.hashed += 1
        return super().sha256(data)


class TestTrustAnchorStore:
    @pytest.mark.asyncio
    async def test_defaults_to_embedded_chain(self, embedded_chain):
        requests = []
        client = httpx.AsyncClient(transport=kds_transport(b"", b"", requests))
        store = TrustAnchorStore(client=client)

        anchors = await store.get("Genoa")

        assert anchors.ark == embedded_chain.ark
        assert anchors.ask == embedded_chain.ask
        assert requests == []
        assert await store.get("Genoa") is anchors

    @pytest.mark.asyncio
    async def test_empty_embedded_chain_refuses(self, no_embedded_chain):
        store = TrustAnchorStore()
        with pytest.raises(ChainValidationError, match="not populated"):
            await store.get("Genoa")

    @pytest.mark.asyncio
    async def test_no_embedded_anchors_for_other_products(self, embedded_chain):
        with pytest.raises(ChainValidationError, match="No embedded AMD trust anchors for product Milan"):
            await TrustAnchorStore().get("Milan")

    @pytest.mark.asyncio
    async def test_embedded_chain_checked_against_pin(self, embedded_chain):
        store = TrustAnchorStore(ark_fingerprint="00" * 32)
        with pytest.raises(ChainValidationError, match="not a trusted AMD root"):
            await store.get("Genoa")

    def test_unknown_source(self):
        with pytest.raises(ValueError, match="Unknown AMD trust anchor source"):
            TrustAnchorStore(source="internet")

    @pytest.mark.asyncio
    async def test_kds_override_matching_embedded_ark(self, embedded_chain):
        requests = []
        client = httpx.AsyncClient(transport=kds_transport(b"", embedded_chain.pem, requests))
        store = TrustAnchorStore(source="kds", base_url="https://kds.example/vcek/v1", client=client)

        anchors = await store.get("Genoa")

        assert anchors.ask == embedded_chain.ask
        assert requests == ["https://kds.example/vcek/v1/Genoa/cert_chain"]

    @pytest.mark.asyncio
    async def test_kds_override_with_foreign_root(self, embedded_chain):
        forged = generate_amd_pki()
        client = httpx.AsyncClient(transport=kds_transport(b"", forged.pem))
        store = TrustAnchorStore(source="kds", base_url="https://kds.example/vcek/v1", client=client)

        with pytest.raises(ChainValidationError, match="not a trusted AMD root"):
            await store.get("Genoa")

    @pytest.mark.asyncio
    async def test_kds_override_without_any_known_root(self, amd_pki, no_embedded_chain):
        client = httpx.AsyncClient(transport=kds_transport(b"", amd_pki.pem))
        store = TrustAnchorStore(source="kds", client=client)

        with pytest.raises(ChainValidationError, match="requires ark_fingerprint"):
            await store.get("Genoa")

    @pytest.mark.asyncio
    async def test_kds_override_with_pin(self, amd_pki):
        client = httpx.AsyncClient(transport=kds_transport(b"", amd_pki.pem))
        store = TrustAnchorStore(source="kds", ark_fingerprint=public_key_fingerprint(amd_pki.ark), client=client)

        assert (await store.get("Genoa")).ark == amd_pki.ark

    @pytest.mark.asyncio
    async def test_loads_pinned_file_once(self, amd_pki, tmp_path):
        path = tmp_path / "amd.pem"
        path.write_bytes(amd_pki.pem)
        store = TrustAnchorStore(pem_path=str(path), ark_fingerprint=public_key_fingerprint(amd_pki.ark))

        first = await store.get("Genoa")
        path.unlink()
        second = await store.get("Genoa")

        assert first is second
        assert first.ark == amd_pki.ark

    @pytest.mark.asyncio
    async def test_file_with_foreign_root(self, embedded_chain, tmp_path):
        path = tmp_path / "amd.pem"
        path.write_bytes(generate_amd_pki().pem)
        store = TrustAnchorStore(pem_path=str(path))

        with pytest.raises(ChainValidationError, match="is not a trusted AMD root"):
            await store.get("Genoa")

    @pytest.mark.asyncio
    async def test_missing_file(self, embedded_chain, tmp_path):
        store = TrustAnchorStore(pem_path=str(tmp_path / "missing.pem"))
        with pytest.raises(ChainValidationError, match="Failed to read AMD certificate chain"):
            await store.get("Genoa")

    @pytest.mark.asyncio
    async def test_parsing_and_pinning_use_platform(self, embedded_chain):
        platform = RecordingPlatform()
        store = TrustAnchorStore(ark_fingerprint=public_key_fingerprint(embedded_chain.ark), platform=platform)

        await store.get("Genoa")

        assert platform.loaded == 2
        assert platform.hashed == 1


def test_public_key_fingerprint_uses_platform(amd_pki):
    platform = RecordingPlatform()
    spki = amd_pki.ark.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )

    assert public_key_fingerprint(amd_pki.ark, platform) == hashlib.sha256(spki).hexdigest()
    assert platform.hashed == 1
