"""
AMD SEV-SNP attestation report ABI.

Decodes the fixed 0x4A0-byte ATTESTATION_REPORT structure (SEV-SNP ABI
specification, table "ATTESTATION_REPORT Structure") into a :class:`Report`.
Reserved ranges are enforced at parse time: a report carrying non-zero bits
in any must-be-zero region is rejected outright.
"""

from dataclasses import dataclass
from enum import IntEnum

from .types import ParseError

POLICY_RESERVED_1_BIT = 17
REPORT_SIZE = 0x4A0  # 1184 bytes
SIGNATURE_OFFSET = 0x2A0
ECDSA_RS_SIZE = 72
ECDSA_P384_SHA384_SIGNATURE_SIZE = ECDSA_RS_SIZE + ECDSA_RS_SIZE
SIGN_ECDSA_P384_SHA384 = 1

CHIP_ID_SIZE = 64
REPORT_DATA_SIZE = 64
MEASUREMENT_SIZE = 48
HOST_DATA_SIZE = 32
FAMILY_ID_SIZE = 16
IMAGE_ID_SIZE = 16
REPORT_ID_SIZE = 32

ZEN3ZEN4_FAMILY = 0x19
ZEN5_FAMILY     = 0x1A
MILAN_MODEL     = 0 | 1
GENOA_MODEL     = (1 << 4) | 1
TURIN_MODEL     = 2


# bit offset of each component within TCB_VERSION
_TCB_SHIFTS = {"bl_spl": 0, "tee_spl": 8, "snp_spl": 48, "ucode_spl": 56}

_POLICY_BITS = {
    "smt": 16,
    "migrate_ma": 18,
    "debug": 19,
    "single_socket": 20,
    "cxl_allowed": 21,
    "mem_aes256_xts": 22,
    "rapl_dis": 23,
    "ciphertext_hiding_dram": 24,
    "page_swap_disabled": 25,
}

_PLATFORM_INFO_BITS = {
    "smt_enabled": 0,
    "tsme_enabled": 1,
    "ecc_enabled": 2,
    "rapl_disabled": 3,
    "ciphertext_hiding_dram_enabled": 4,
    "alias_check_complete": 5,
    "tio_enabled": 7,
}


def _decode_flags(value: int, bits: dict) -> dict:
    return {name: bool(value >> bit & 1) for name, bit in bits.items()}


def _format_flags(obj, bits: dict) -> str:
    return ", ".join(f"{name}={getattr(obj, name)}" for name in bits)


class ReportSigner(IntEnum):
    """SIGNING_KEY values of SIGNER_INFO (bits 4:2)."""
    VcekReportSigner = 0
    VlekReportSigner = 1
    endorseReserved2 = 2
    endorseReserved3 = 3
    endorseReserved4 = 4
    endorseReserved5 = 5
    endorseReserved6 = 6
    # report is unsigned
    NoneReportSigner = 7


@dataclass(frozen=True)
class SignerInfo:
    """Decoded SIGNER_INFO field."""
    signing_key: ReportSigner
    # CHIP_ID is zeroed when set
    mask_chip_key: bool
    author_key_en: bool

    @classmethod
    def from_int(cls, value: int) -> "SignerInfo":
        return cls(
            signing_key=ReportSigner((value >> 2) & 7),
            mask_chip_key=(value & 2) != 0,
            author_key_en=(value & 1) != 0,
        )


@dataclass(frozen=True)
class TCBParts:
    """The four security patch levels packed into a 64-bit TCB_VERSION."""
    bl_spl: int
    tee_spl: int
    snp_spl: int
    ucode_spl: int

    def __str__(self) -> str:
        return "TCBParts(" + ", ".join(f"{name}=0x{getattr(self, name):02x}" for name in _TCB_SHIFTS) + ")"

    @classmethod
    def from_int(cls, tcb: int) -> "TCBParts":
        return cls(**{name: (tcb >> shift) & 0xFF for name, shift in _TCB_SHIFTS.items()})

    def to_int(self) -> int:
        value = 0
        for name, shift in _TCB_SHIFTS.items():
            value |= getattr(self, name) << shift
        return value

    def meets_minimum(self, minimum: "TCBParts") -> bool:
        """Every component is at least the matching component of ``minimum``."""
        return all(getattr(self, name) >= getattr(minimum, name) for name in _TCB_SHIFTS)


@dataclass(frozen=True)
class SnpPlatformInfo:
    """Decoded view of the 64-bit PLATFORM_INFO field."""

    smt_enabled: bool
    tsme_enabled: bool
    ecc_enabled: bool
    rapl_disabled: bool
    ciphertext_hiding_dram_enabled: bool
    alias_check_complete: bool
    tio_enabled: bool

    @classmethod
    def from_int(cls, value: int) -> "SnpPlatformInfo":
        return cls(**_decode_flags(value, _PLATFORM_INFO_BITS))

    def __str__(self) -> str:
        return f"SnpPlatformInfo({_format_flags(self, _PLATFORM_INFO_BITS)})"


@dataclass(frozen=True)
class SnpPolicy:
    """Decoded view of the 64-bit POLICY field (bits 0-25)."""

    abi_minor: int
    abi_major: int
    smt: bool
    migrate_ma: bool
    debug: bool
    single_socket: bool
    cxl_allowed: bool
    mem_aes256_xts: bool
    rapl_dis: bool
    ciphertext_hiding_dram: bool
    page_swap_disabled: bool

    def __str__(self) -> str:
        return f"SnpPolicy(ABI={self.abi_major}.{self.abi_minor}, {_format_flags(self, _POLICY_BITS)})"

    @classmethod
    def from_int(cls, value: int) -> "SnpPolicy":
        return cls(
            abi_minor=value & 0xFF,
            abi_major=(value >> 8) & 0xFF,
            **_decode_flags(value, _POLICY_BITS),
        )


@dataclass(frozen=True)
class Report:
    """SEV-SNP attestation report"""
    version: int  # 2 for revision 1.55, 3 for revision 1.56, 5 for revision 1.58
    guest_svn: int
    policy: int
    policy_parsed: SnpPolicy
    family_id: bytes  # 16 bytes
    image_id: bytes   # 16 bytes
    vmpl: int
    signature_algo: int
    current_tcb: int
    platform_info: int
    platform_info_parsed: SnpPlatformInfo
    signer_info: int  # AuthorKeyEn, MaskChipKey, SigningKey
    signer_info_parsed: SignerInfo
    report_data: bytes  # 64 bytes
    measurement: bytes  # 48 bytes
    host_data: bytes   # 32 bytes
    id_key_digest: bytes  # 48 bytes
    author_key_digest: bytes  # 48 bytes
    report_id: bytes   # 32 bytes
    report_id_ma: bytes  # 32 bytes
    reported_tcb: int
    chip_id: bytes  # 64 bytes
    committed_tcb: int
    current_build: int
    current_minor: int
    current_major: int
    committed_build: int
    committed_minor: int
    committed_major: int
    launch_tcb: int
    family: int
    model: int
    stepping: int
    product_name: str
    signed_data: bytes
    signature: bytes  # 512 bytes

    def describe(self) -> str:
        """Render all relevant fields of the report in a human-readable format."""
        lines = [
            "=== SEV-SNP Attestation Report ===",
            f"Version: {self.version}",
            f"Guest SVN: {self.guest_svn}",
            f"Policy: 0x{self.policy:x}",
            f"  -> {self.policy_parsed}",
            f"Family ID: {self.family_id.hex()}",
            f"Image ID: {self.image_id.hex()}",
            f"VMPL: {self.vmpl}",
            f"Signature Algorithm: {self.signature_algo}",
            f"Current TCB: 0x{self.current_tcb:x}",
            f"  -> {TCBParts.from_int(self.current_tcb)}",
            f"Platform Info: 0x{self.platform_info:x}",
            f"  -> {self.platform_info_parsed}",
            f"Signer Info: 0x{self.signer_info:x}",
            f"  - Signing Key: {self.signer_info_parsed.signing_key.name}",
            f"  - Mask Chip Key: {self.signer_info_parsed.mask_chip_key}",
            f"  - Author Key Enabled: {self.signer_info_parsed.author_key_en}",
            f"Report Data: {self.report_data.hex()}",
            f"Measurement: {self.measurement.hex()}",
            f"Host Data: {self.host_data.hex()}",
            f"ID Key Digest: {self.id_key_digest.hex()}",
            f"Author Key Digest: {self.author_key_digest.hex()}",
            f"Report ID: {self.report_id.hex()}",
            f"Report ID MA: {self.report_id_ma.hex()}",
            f"Reported TCB: 0x{self.reported_tcb:x}",
            f"  -> {TCBParts.from_int(self.reported_tcb)}",
            f"Chip ID: {self.chip_id.hex()}",
            f"Committed TCB: 0x{self.committed_tcb:x}",
            f"  -> {TCBParts.from_int(self.committed_tcb)}",
            f"Current Version: {self.current_major}.{self.current_minor}.{self.current_build}",
            f"Committed Version: {self.committed_major}.{self.committed_minor}.{self.committed_build}",
            f"Launch TCB: 0x{self.launch_tcb:x}",
            f"  -> {TCBParts.from_int(self.launch_tcb)}",
            f"Product Name: {self.product_name}",
            f"CPU: Family=0x{self.family:02x}, Model=0x{self.model:02x}, Stepping=0x{self.stepping:02x}",
            f"Signature Length: {len(self.signature)} bytes",
            "=" * 40,
        ]
        return "\n".join(lines)


def parse_report(data: bytes) -> Report:
    """
    Parse an attestation report from raw bytes in SEV SNP ABI format.

    Args:
        data: Raw bytes of the attestation report (at least REPORT_SIZE bytes)
    Returns:
        Report object containing parsed data
    Raises:
        ParseError: If the buffer is too small, a reserved region is not zero,
            or the version / signing key is unsupported
    """
    if len(data) < REPORT_SIZE:
        raise ParseError(
            f"Array size is 0x{len(data):x}, an SEV-SNP attestation report size is 0x{REPORT_SIZE:x}"
        )
    data = bytes(data[:REPORT_SIZE])

    version = _u32(data, 0x00)
    guest_svn = _u32(data, 0x04)
    policy = _u64(data, 0x08)

    # Check reserved bit must be 1
    if not (policy & (1 << POLICY_RESERVED_1_BIT)):
        raise ParseError(f"policy[{POLICY_RESERVED_1_BIT}] is reserved, must be 1, got 0")

    if policy >> 26:
        raise ParseError("policy bits 63-26 must be zero")

    vmpl = _u32(data, 0x30)
    signature_algo = _u32(data, 0x34)
    current_tcb = _checked_tcb(data, 0x38, "current_tcb")
    platform_info = _u64(data, 0x40)

    signer_info = _u32(data, 0x48)
    try:
        mbz64(signer_info, "signer_info", 31, 5)
    except ParseError as e:
        raise ParseError(f"signer_info not correctly formed: {e}") from e

    signer_info_parsed = SignerInfo.from_int(signer_info)
    if signer_info_parsed.signing_key != ReportSigner.VcekReportSigner:
        raise ParseError(
            f"This implementation only supports VCEK signed reports. Got {signer_info_parsed.signing_key.name}"
        )

    _checked_mbz(data, 0x4C, 0x50, "reserved bytes after signer_info")

    reported_tcb = _checked_tcb(data, 0x180, "reported_tcb")

    # Version specific parsing
    if version >= 3:
        family, model, stepping = data[0x188], data[0x189], data[0x18A]
        product_name = _product_name(family, model)
        mbz_lo = 0x18B
    elif version == 2:
        # Version 2 reports carry no CPUID; they were only produced on Genoa.
        family, model, stepping = ZEN3ZEN4_FAMILY, GENOA_MODEL, 0x01
        product_name = "Genoa"
        mbz_lo = 0x188
    else:
        raise ParseError(f"Unknown report version {version}")

    _checked_mbz(data, mbz_lo, 0x1A0, "reserved bytes before chip_id")

    committed_tcb = _checked_tcb(data, 0x1E0, "committed_tcb")
    _checked_mbz(data, 0x1EB, 0x1EC, "reserved byte after current version")
    _checked_mbz(data, 0x1EF, 0x1F0, "reserved byte after committed version")
    launch_tcb = _checked_tcb(data, 0x1F0, "launch_tcb")
    _checked_mbz(data, 0x1F8, SIGNATURE_OFFSET, "reserved bytes before signature")

    if signature_algo == SIGN_ECDSA_P384_SHA384:
        _checked_mbz(
            data, SIGNATURE_OFFSET + ECDSA_P384_SHA384_SIGNATURE_SIZE, REPORT_SIZE, "signature padding"
        )

    return Report(
        version=version,
        guest_svn=guest_svn,
        policy=policy,
        policy_parsed=SnpPolicy.from_int(policy),
        family_id=data[0x10:0x20],
        image_id=data[0x20:0x30],
        vmpl=vmpl,
        signature_algo=signature_algo,
        current_tcb=current_tcb,
        platform_info=platform_info,
        platform_info_parsed=SnpPlatformInfo.from_int(platform_info),
        signer_info=signer_info,
        signer_info_parsed=signer_info_parsed,
        report_data=data[0x50:0x90],
        measurement=data[0x90:0xC0],
        host_data=data[0xC0:0xE0],
        id_key_digest=data[0xE0:0x110],
        author_key_digest=data[0x110:0x140],
        report_id=data[0x140:0x160],
        report_id_ma=data[0x160:0x180],
        reported_tcb=reported_tcb,
        chip_id=data[0x1A0:0x1E0],
        committed_tcb=committed_tcb,
        current_build=data[0x1E8],
        current_minor=data[0x1E9],
        current_major=data[0x1EA],
        committed_build=data[0x1EC],
        committed_minor=data[0x1ED],
        committed_major=data[0x1EE],
        launch_tcb=launch_tcb,
        family=family,
        model=model,
        stepping=stepping,
        product_name=product_name,
        signed_data=data[0:SIGNATURE_OFFSET],
        signature=data[SIGNATURE_OFFSET:REPORT_SIZE],
    )


def _product_name(family: int, model: int) -> str:
    if family == ZEN3ZEN4_FAMILY:
        if model == MILAN_MODEL:
            return "Milan"
        if model == GENOA_MODEL:
            return "Genoa"
    elif family == ZEN5_FAMILY:
        if model == TURIN_MODEL:
            return "Turin"
    return "Unknown"


## HELPER FUNCTIONS

def _u32(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset:offset + 4], byteorder='little')

def _u64(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset:offset + 8], byteorder='little')

def _checked_tcb(data: bytes, offset: int, name: str) -> int:
    tcb = _u64(data, offset)
    try:
        mbz64(tcb, name, 47, 16)
    except ParseError as e:
        raise ParseError(f"{name} not correctly formed: {e}") from e
    return tcb

def _checked_mbz(data: bytes, lo: int, hi: int, region: str) -> None:
    try:
        mbz(data, lo, hi)
    except ParseError as e:
        raise ParseError(f"{region} not correctly formed: {e}") from e

def mbz(data: bytes, lo: int, hi: int) -> None:
    """
    Require bytes ``data[lo:hi]`` to be zero.

    Raises:
        ParseError: If any byte in the range is non-zero
    """
    if any(data[lo:hi]):
        raise ParseError(f"mbz range [0x{lo:x}:0x{hi:x}] not all zero: {data[lo:hi].hex()}")

def mbz64(data: int, base: str, hi: int, lo: int) -> None:
    """
    Require bits ``lo..hi`` (inclusive) of ``data`` to be zero.

    Raises:
        ParseError: If any bit in the range is non-zero
    """
    if data & (((1 << (hi + 1)) - 1) ^ ((1 << lo) - 1)):
        raise ParseError(f"mbz range {base}[0x{lo:x}:0x{hi:x}] not all zero: {hex(data)}")
