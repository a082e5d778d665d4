"""
Shared fixtures: synthetic SEV-SNP reports and an AMD-shaped ARK > ASK > VCEK
chain generated with ``cryptography``.
"""

import base64
import gzip
import json
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

from tinfoil_verifier.attestation.abi_sevsnp import REPORT_SIZE, SIGNATURE_OFFSET
from tinfoil_verifier.attestation.verify import SnpOid
from tinfoil_verifier.cache import MemoryCertificateCache
from tinfoil_verifier.attestation import genoa_cert_chain
from tinfoil_verifier.attestation.kds import TrustAnchors, VcekFetcher

DEFAULT_TCB = 0x480e000000000007  # bl 7, tee 0, snp 0x0e, ucode 0x48
DEFAULT_CHIP_ID = bytes(range(64))
DEFAULT_MEASUREMENT = bytes.fromhex(
    "2dedaee13b84dc618efc73f685b16de46826380a2dd45df15da3dd8badbc9822"
    "cadf7bfc7595912c4517ba6fab1b52c0"
)
TLS_FP = bytes.fromhex("10ca85437a8e7353494bd4fce763b0aad25107cd8ab5e4a051c28b454f01063e")
HPKE_KEY = bytes.fromhex("be5a9c84f5b53a4ed9abcf7cf7fd533718ca132c9fb5873b02a97d2e2081f80d")


# =============================================================================
# Reports
# =============================================================================

def build_report(
    version: int = 3,
    guest_svn: int = 0,
    policy: int = (1 << 17) | (1 << 16),
    vmpl: int = 0,
    signature_algo: int = 1,
    current_tcb: int = DEFAULT_TCB,
    platform_info: int = 1,
    signer_info: int = 0,
    report_data: bytes = TLS_FP + HPKE_KEY,
    measurement: bytes = DEFAULT_MEASUREMENT,
    reported_tcb: Optional[int] = None,
    fms=(0x19, 0x11, 0x01),
    chip_id: bytes = DEFAULT_CHIP_ID,
    committed_tcb: Optional[int] = None,
    current_version=(1, 55, 21),
    committed_version: Optional[tuple] = None,
    launch_tcb: Optional[int] = None,
) -> bytearray:
    """Lay out an unsigned ATTESTATION_REPORT; versions are (major, minor, build)."""
    data = bytearray(REPORT_SIZE)
    struct.pack_into("<IIQ", data, 0x00, version, guest_svn, policy)
    struct.pack_into("<IIQQI", data, 0x30, vmpl, signature_algo, current_tcb, platform_info, signer_info)
    data[0x50:0x90] = report_data
    data[0x90:0xC0] = measurement
    struct.pack_into("<Q", data, 0x180, current_tcb if reported_tcb is None else reported_tcb)
    if version >= 3:
        data[0x188:0x18B] = bytes(fms)
    data[0x1A0:0x1E0] = chip_id
    struct.pack_into("<Q", data, 0x1E0, current_tcb if committed_tcb is None else committed_tcb)
    major, minor, build = current_version
    data[0x1E8:0x1EB] = bytes([build, minor, major])
    major, minor, build = committed_version or current_version
    data[0x1EC:0x1EF] = bytes([build, minor, major])
    struct.pack_into("<Q", data, 0x1F0, current_tcb if launch_tcb is None else launch_tcb)
    return data


def sign_report(data: bytearray, key: ec.EllipticCurvePrivateKey) -> bytes:
    """Sign bytes 0..0x2A0 and store R and S little-endian, 72 bytes each."""
    der = key.sign(bytes(data[:SIGNATURE_OFFSET]), ec.ECDSA(hashes.SHA384()))
    r, s = decode_dss_signature(der)
    data[SIGNATURE_OFFSET:SIGNATURE_OFFSET + 72] = r.to_bytes(72, "little")
    data[SIGNATURE_OFFSET + 72:SIGNATURE_OFFSET + 144] = s.to_bytes(72, "little")
    return bytes(data)


def encode_document(report: bytes, format_uri: str, compress: bool = True) -> str:
    body = gzip.compress(report) if compress else report
    return json.dumps({"format": format_uri, "body": base64.b64encode(body).decode()})


@pytest.fixture
def report_bytes():
    return bytes(build_report())


# =============================================================================
# AMD-shaped PKI
# =============================================================================

def amd_name(common_name: str, locality: str = "Santa Clara") -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
        x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "CA"),
        x509.NameAttribute(NameOID.LOCALITY_NAME, locality),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Advanced Micro Devices"),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, "Engineering"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


def der_integer(value: int) -> bytes:
    body = value.to_bytes(max(1, (value.bit_length() + 8) // 8), "big")
    return bytes([0x02, len(body)]) + body


PSS = padding.PSS(mgf=padding.MGF1(hashes.SHA384()), salt_length=48)


def _sign(builder: x509.CertificateBuilder, key, pss: bool = True) -> x509.Certificate:
    if isinstance(key, rsa.RSAPrivateKey):
        return builder.sign(key, hashes.SHA384(), rsa_padding=PSS if pss else padding.PKCS1v15())
    return builder.sign(key, hashes.SHA384())


def _builder(subject: x509.Name, issuer: x509.Name, public_key, not_before=None, not_after=None):
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
    )


def vcek_extensions(
    tcb: int = DEFAULT_TCB,
    hwid: bytes = DEFAULT_CHIP_ID,
    product_name: bytes = b"\x16\x05Genoa",
) -> Dict:
    bl, tee = tcb & 0xff, (tcb >> 8) & 0xff
    snp, ucode = (tcb >> 48) & 0xff, (tcb >> 56) & 0xff
    return {
        SnpOid.STRUCT_VERSION: der_integer(1),
        SnpOid.PRODUCT_NAME_1: product_name,
        SnpOid.BL_SPL: der_integer(bl),
        SnpOid.TEE_SPL: der_integer(tee),
        SnpOid.SNP_SPL: der_integer(snp),
        SnpOid.UCODE: der_integer(ucode),
        SnpOid.HWID: hwid,
    }


@dataclass
class AmdPki:
    ark_key: rsa.RSAPrivateKey
    ask_key: rsa.RSAPrivateKey
    vcek_key: ec.EllipticCurvePrivateKey
    ark: x509.Certificate
    ask: x509.Certificate

    @property
    def anchors(self) -> TrustAnchors:
        return TrustAnchors(ark=self.ark, ask=self.ask)

    @property
    def pem(self) -> bytes:
        # KDS cert_chain order: ASK then ARK
        return certs_to_pem([self.ask, self.ark])

    def make_ark(self, common_name: str = "ARK-Genoa", **kwargs) -> x509.Certificate:
        name = amd_name(common_name)
        return _sign(_builder(name, name, self.ark_key.public_key(), **kwargs), self.ark_key)

    def make_ask(self, common_name: str = "SEV-Genoa", signer=None, **kwargs) -> x509.Certificate:
        builder = _builder(amd_name(common_name), self.ark.subject, self.ask_key.public_key(), **kwargs)
        return _sign(builder, signer or self.ark_key)

    def make_vcek(
        self,
        extensions: Optional[Dict] = None,
        common_name: str = "SEV-VCEK",
        public_key=None,
        pss: bool = True,
        signer=None,
        **kwargs,
    ) -> x509.Certificate:
        builder = _builder(
            amd_name(common_name), self.ask.subject, public_key or self.vcek_key.public_key(), **kwargs
        )
        for oid, value in (vcek_extensions() if extensions is None else extensions).items():
            builder = builder.add_extension(x509.UnrecognizedExtension(oid, value), critical=False)
        return _sign(builder, signer or self.ask_key, pss=pss)


def certs_to_pem(certs) -> bytes:
    return b"".join(cert.public_bytes(serialization.Encoding.PEM) for cert in certs)


def generate_amd_pki() -> AmdPki:
    """A fresh ARK-Genoa > SEV-Genoa hierarchy with its own keys."""
    ark_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    ask_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    vcek_key = ec.generate_private_key(ec.SECP384R1())
    pki = AmdPki(ark_key=ark_key, ask_key=ask_key, vcek_key=vcek_key, ark=None, ask=None)
    pki.ark = pki.make_ark()
    pki.ask = pki.make_ask()
    return pki


@pytest.fixture(scope="session")
def amd_pki() -> AmdPki:
    return generate_amd_pki()


@pytest.fixture
def embedded_chain(amd_pki, monkeypatch):
    """Install the synthetic ARK/ASK as the package's embedded Genoa chain."""
    monkeypatch.setattr(genoa_cert_chain, "ARK_CERT", certs_to_pem([amd_pki.ark]))
    monkeypatch.setattr(genoa_cert_chain, "ASK_CERT", certs_to_pem([amd_pki.ask]))
    return amd_pki


@pytest.fixture
def no_embedded_chain(monkeypatch):
    monkeypatch.setattr(genoa_cert_chain, "ARK_CERT", b"")
    monkeypatch.setattr(genoa_cert_chain, "ASK_CERT", b"")


@pytest.fixture(scope="session")
def vcek(amd_pki):
    return amd_pki.make_vcek()


class StaticAnchors:
    """Stands in for TrustAnchorStore with fixed anchors."""

    def __init__(self, anchors: TrustAnchors):
        self.anchors = anchors
        self.calls = 0

    async def get(self, product_name: str) -> TrustAnchors:
        self.calls += 1
        return self.anchors


def kds_transport(vcek_der: bytes, pem: bytes = b"", requests=None) -> httpx.MockTransport:
    """KDS stand-in: serves the VCEK and the cert_chain, recording request URLs."""
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(str(request.url))
        if request.url.path.endswith("/cert_chain"):
            return httpx.Response(200, content=pem)
        return httpx.Response(200, content=vcek_der)
    return httpx.MockTransport(handler)


@pytest.fixture
def vcek_fetcher_factory(amd_pki):
    def factory(cert=None, requests=None, cache=None):
        der = (cert or amd_pki.make_vcek()).public_bytes(serialization.Encoding.DER)
        client = httpx.AsyncClient(transport=kds_transport(der, amd_pki.pem, requests))
        return VcekFetcher(cache=cache if cache is not None else MemoryCertificateCache(), client=client)

    return factory
