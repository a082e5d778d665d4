"""
Decoding helpers for attestation document bodies.
"""

import base64
import binascii
import zlib

from .types import ParseError

MAX_DECOMPRESSED_SIZE = 10 * 1024 * 1024  # 10 MiB

# zlib window bits accepting a gzip header and trailer
_GZIP_WBITS = 16 + zlib.MAX_WBITS


def safe_gzip_decompress(data: bytes, max_size: int = MAX_DECOMPRESSED_SIZE) -> bytes:
    """
    Inflate a gzip body, refusing to produce more than ``max_size`` bytes.

    Raises:
        ParseError: If the stream is corrupt, truncated or too large
    """
    inflater = zlib.decompressobj(_GZIP_WBITS)
    try:
        out = inflater.decompress(data, max_size + 1)
    except zlib.error as e:
        raise ParseError(f"Gzip decompression failed: {e}") from e

    if len(out) > max_size or inflater.unconsumed_tail:
        raise ParseError(f"Decompressed attestation exceeds maximum size ({max_size} bytes)")
    if not inflater.eof:
        raise ParseError("Gzip decompression failed: truncated stream")
    return out


def decode_body(body: str) -> bytes:
    """Strict base64 decode of an attestation document body."""
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ParseError(f"Attestation body is not valid base64: {e}") from e
