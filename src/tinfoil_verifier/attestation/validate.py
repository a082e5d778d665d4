from dataclasses import dataclass
from typing import Optional

from .abi_sevsnp import (
    CHIP_ID_SIZE,
    FAMILY_ID_SIZE,
    HOST_DATA_SIZE,
    IMAGE_ID_SIZE,
    MEASUREMENT_SIZE,
    REPORT_DATA_SIZE,
    REPORT_ID_SIZE,
    Report,
    TCBParts,
    SnpPolicy,
    SnpPlatformInfo,
)
from .types import (
    MissingRequirementError,
    PolicyViolationError,
    UnauthorizedCapabilityError,
)
from .verify import CertificateChain

@dataclass
class ValidationOptions:
    """Floors and expected values for :func:`validate_report`; ``None`` skips a check."""
    # guest policy and firmware floors
    guest_policy: Optional[SnpPolicy] = None
    minimum_guest_svn: Optional[int] = None
    minimum_build: Optional[int] = None          # Firmware build (uint8)
    minimum_version: Optional[int] = None        # Firmware API version (uint16), major << 8 | minor

    # TCB requirements
    minimum_tcb: Optional[TCBParts] = None
    minimum_launch_tcb: Optional[TCBParts] = None
    permit_provisional_firmware: bool = False

    # Field equality checks
    report_data: Optional[bytes] = None          # 64 bytes
    host_data: Optional[bytes] = None            # 32 bytes
    image_id: Optional[bytes] = None             # 16 bytes
    family_id: Optional[bytes] = None            # 16 bytes
    report_id: Optional[bytes] = None            # 32 bytes
    report_id_ma: Optional[bytes] = None         # 32 bytes
    measurement: Optional[bytes] = None          # 48 bytes
    chip_id: Optional[bytes] = None              # 64 bytes

    # Misc
    platform_info: Optional[SnpPlatformInfo] = None
    vmpl: Optional[int] = None                  # Expected VMPL (0-3)

    require_author_key: bool = False
    require_id_block: bool = False


# Minimum TCB requirements for AMD SEV-SNP
min_tcb = TCBParts(
    bl_spl=0x7,
    tee_spl=0,
    snp_spl=0xe,
    ucode_spl=0x48,
)

default_validation_options = ValidationOptions(
    guest_policy=SnpPolicy(
        abi_minor=0,
        abi_major=0,
        smt=True,
        migrate_ma=False,
        debug=False,
        single_socket=False,
        cxl_allowed=False,
        mem_aes256_xts=False,
        rapl_dis=False,
        ciphertext_hiding_dram=False,
        page_swap_disabled=False,
    ),
    minimum_guest_svn=0,
    minimum_build=21,
    minimum_version=(1 << 8) | 55,  # 1.55
    minimum_tcb=min_tcb,
    minimum_launch_tcb=min_tcb,
    permit_provisional_firmware=False,
    platform_info=SnpPlatformInfo(
        smt_enabled=True,
        tsme_enabled=False,
        ecc_enabled=False,
        rapl_disabled=False,
        ciphertext_hiding_dram_enabled=False,
        alias_check_complete=False,
        tio_enabled=False,
    ),
    require_author_key=False,
    require_id_block=False,
)


def validate_report(report: Report, chain: CertificateChain, options: ValidationOptions):
    """
    Apply *options* to a parsed report and check its binding to the chain's VCEK.

    Raises:
        PolicyViolationError: If a policy check fails
        ChainValidationError: If the VCEK does not match the report's TCB or chip id
    """
    if not (0 <= report.vmpl <= 3):
        raise PolicyViolationError(f"VMPL {report.vmpl} is not in valid range 0-3")

    # Policy constraints
    if options.guest_policy is not None:
        _validate_policy(report.policy_parsed, options.guest_policy)

    if options.minimum_guest_svn is not None:
        if report.guest_svn < options.minimum_guest_svn:
            raise PolicyViolationError(f"Guest SVN {report.guest_svn} is less than minimum required {options.minimum_guest_svn}")

    if options.minimum_build is not None:
        if report.current_build < options.minimum_build:
            raise PolicyViolationError(f"Current SNP firmware build number {report.current_build} is less than minimum required {options.minimum_build}")
        if report.committed_build < options.minimum_build:
            raise PolicyViolationError(f"Committed SNP firmware build number {report.committed_build} is less than minimum required {options.minimum_build}")

    if options.minimum_version is not None:
        current_version = (report.current_major << 8) | report.current_minor
        committed_version = (report.committed_major << 8) | report.committed_minor
        if current_version < options.minimum_version:
            raise PolicyViolationError(f"Current SNP firmware version {report.current_major}.{report.current_minor} is less than minimum required {options.minimum_version >> 8}.{options.minimum_version & 0xff}")
        if committed_version < options.minimum_version:
            raise PolicyViolationError(f"Committed SNP firmware version {report.committed_major}.{report.committed_minor} is less than minimum required {options.minimum_version >> 8}.{options.minimum_version & 0xff}")

    # TCB requirements
    if options.minimum_tcb is not None:
        for name, tcb in (
            ("Current", report.current_tcb),
            ("Committed", report.committed_tcb),
            ("Reported", report.reported_tcb),
        ):
            parts = TCBParts.from_int(tcb)
            if not parts.meets_minimum(options.minimum_tcb):
                raise PolicyViolationError(f"{name} TCB {parts} does not meet minimum requirements {options.minimum_tcb}")

    if options.minimum_launch_tcb is not None:
        launch_tcb_parts = TCBParts.from_int(report.launch_tcb)
        if not launch_tcb_parts.meets_minimum(options.minimum_launch_tcb):
            raise PolicyViolationError(f"Launch TCB {launch_tcb_parts} does not meet minimum requirements {options.minimum_launch_tcb}")

    # Field equality checks
    for name, expected, actual, size in (
        ("Report data", options.report_data, report.report_data, REPORT_DATA_SIZE),
        ("Host data", options.host_data, report.host_data, HOST_DATA_SIZE),
        ("Image ID", options.image_id, report.image_id, IMAGE_ID_SIZE),
        ("Family ID", options.family_id, report.family_id, FAMILY_ID_SIZE),
        ("Report ID", options.report_id, report.report_id, REPORT_ID_SIZE),
        ("Report ID MA", options.report_id_ma, report.report_id_ma, REPORT_ID_SIZE),
        ("Measurement", options.measurement, report.measurement, MEASUREMENT_SIZE),
        ("Chip ID", options.chip_id, report.chip_id, CHIP_ID_SIZE),
    ):
        if expected is None:
            continue
        if len(expected) != size:
            raise PolicyViolationError(f"Expected {name} length is {len(expected)}, expected {size} bytes")
        if actual != expected:
            raise PolicyViolationError(f"{name} mismatch: got {actual.hex()}, expected {expected.hex()}")

    # VCEK <-> report TCB and CHIP_ID binding
    chain.validate_report_binding(report)

    # Platform info check
    if options.platform_info is not None:
        _validate_platform_info(report.platform_info_parsed, options.platform_info)

    if options.vmpl is not None:
        if report.vmpl != options.vmpl:
            raise PolicyViolationError(f"VMPL mismatch: got {report.vmpl}, expected {options.vmpl}")

    if options.permit_provisional_firmware:
        raise PolicyViolationError("Provisional firmware is not supported")

    # Without provisional firmware, committed and current values must be equal
    if report.committed_build != report.current_build:
        raise PolicyViolationError(f"Committed build {report.committed_build} does not match current build {report.current_build}")
    if report.committed_minor != report.current_minor:
        raise PolicyViolationError(f"Committed minor version {report.committed_minor} does not match current minor version {report.current_minor}")
    if report.committed_major != report.current_major:
        raise PolicyViolationError(f"Committed major version {report.committed_major} does not match current major version {report.current_major}")
    if report.committed_tcb != report.current_tcb:
        raise PolicyViolationError(f"Committed TCB 0x{report.committed_tcb:x} does not match current TCB 0x{report.current_tcb:x}")

    if options.require_author_key or options.require_id_block:
        raise PolicyViolationError("ID-block and author key requirements are not supported yet")


# capability flags a report may only enable when the required policy allows them
_POLICY_CAPABILITIES = (
    ("migrate_ma", "migration agent"),
    ("debug", "debug"),
    ("smt", "symmetric multithreading (SMT)"),
    ("cxl_allowed", "CXL"),
    ("mem_aes256_xts", "AES-256-XTS memory encryption mode"),
)

# restriction flags the report must carry when the required policy sets them
_POLICY_RESTRICTIONS = (
    ("single_socket", "single socket restriction"),
    ("mem_aes256_xts", "AES-256-XTS memory encryption"),
    ("rapl_dis", "RAPL disable"),
    ("ciphertext_hiding_dram", "ciphertext hiding in DRAM"),
    ("page_swap_disabled", "page swap disable"),
)

_PLATFORM_CAPABILITIES = (
    ("smt_enabled", "SMT"),
)

_PLATFORM_REQUIREMENTS = (
    ("ecc_enabled", "ECC"),
    ("tsme_enabled", "TSME"),
    ("rapl_disabled", "RAPL disable"),
    ("ciphertext_hiding_dram_enabled", "ciphertext hiding in DRAM"),
    ("alias_check_complete", "memory alias check"),
    ("tio_enabled", "TIO"),
)


def _validate_policy(report_policy: SnpPolicy, required: SnpPolicy):
    """
    Check the guest policy asymmetrically: the report may be stricter than
    required but never looser.

    Raises:
        UnauthorizedCapabilityError: the report allows a capability the
            required policy forbids
        MissingRequirementError: the report lacks a restriction the required
            policy mandates, or has an older ABI
    """
    if _compare_policy_versions(required, report_policy) > 0:
        raise MissingRequirementError(
            f"Required ABI version ({required.abi_major}.{required.abi_minor}) is greater than "
            f"report's ABI version ({report_policy.abi_major}.{report_policy.abi_minor})"
        )

    detail = f"Report policy: {report_policy}, Required policy: {required}"

    for flag, label in _POLICY_CAPABILITIES:
        if getattr(report_policy, flag) and not getattr(required, flag):
            raise UnauthorizedCapabilityError(f"Report policy allows {label}, which is not permitted. {detail}")

    for flag, label in _POLICY_RESTRICTIONS:
        if getattr(required, flag) and not getattr(report_policy, flag):
            raise MissingRequirementError(f"Required {label} is not enforced by the report policy. {detail}")


def _compare_policy_versions(required: SnpPolicy, report: SnpPolicy) -> int:
    """Positive when the required ABI version is newer than the report's."""
    return ((required.abi_major << 8) | required.abi_minor) - ((report.abi_major << 8) | report.abi_minor)


def _validate_platform_info(report_info: SnpPlatformInfo, required: SnpPlatformInfo):
    """Same asymmetric rule as the guest policy, over the platform info bits."""
    detail = f"Report platform info: {report_info}, Required platform info: {required}"

    for flag, label in _PLATFORM_CAPABILITIES:
        if getattr(report_info, flag) and not getattr(required, flag):
            raise UnauthorizedCapabilityError(f"Platform has {label} enabled, which is not permitted. {detail}")

    for flag, label in _PLATFORM_REQUIREMENTS:
        if getattr(required, flag) and not getattr(report_info, flag):
            raise MissingRequirementError(f"Required platform feature {label} is not active. {detail}")
