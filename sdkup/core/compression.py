"""
Decoding of repository index payloads

An index may be served as-is or compressed with zstd, gzip, xz or bzip2.
The codec is picked from the leading magic bytes, never from the URL.
Every codec inflates incrementally and stops once the output passes
MAX_INDEX_SIZE.
"""

import bz2
import lzma
import zlib

import zstandard

# Inflated indexes larger than this are rejected
MAX_INDEX_SIZE = 256 * 1024 * 1024

CHUNK_SIZE = 1024 * 1024


class _TooLarge(ValueError):
    pass


def _zstd(data: bytes) -> bytes:
    out = bytearray()
    with zstandard.ZstdDecompressor().stream_reader(data) as reader:
        for chunk in iter(lambda: reader.read(CHUNK_SIZE), b''):
            out += chunk
            if len(out) > MAX_INDEX_SIZE:
                raise _TooLarge()
    return bytes(out)


def _streams(new_decoder):
    """Decoder for formats made of concatenated streams (gzip members, xz, bzip2)."""

    def decode(data: bytes) -> bytes:
        out = bytearray()
        while data.strip(b'\0'):
            decoder = new_decoder()
            out += decoder.decompress(data, MAX_INDEX_SIZE + 1 - len(out))
            if len(out) > MAX_INDEX_SIZE:
                raise _TooLarge()
            if not decoder.eof:
                raise EOFError("Compressed data ended before the end-of-stream marker")
            data = decoder.unused_data
        return bytes(out)

    return decode


# (name, magic, decoder), checked in order
CODECS = (
    ('zstd', b'\x28\xb5\x2f\xfd', _zstd),
    ('gzip', b'\x1f\x8b', _streams(lambda: zlib.decompressobj(16 + zlib.MAX_WBITS))),
    ('xz', b'\xfd7zXZ\x00', _streams(lzma.LZMADecompressor)),
    ('bzip2', b'BZh', _streams(bz2.BZ2Decompressor)),
)

_ERRORS = (OSError, EOFError, zlib.error, lzma.LZMAError, zstandard.ZstdError)


def _codec(data: bytes):
    for name, magic, decoder in CODECS:
        if data.startswith(magic):
            return name, decoder
    return 'plain', None


def detect_format(data: bytes) -> str:
    """Name of the codec matching the payload head ('plain' if none does)."""
    return _codec(data)[0]


def decompress_bytes(data: bytes) -> bytes:
    """Decode a payload; plain payloads are returned untouched.

    Raises:
        ValueError: Corrupt payload, or one inflating past MAX_INDEX_SIZE
    """
    name, decoder = _codec(data)
    if decoder is None:
        return data

    try:
        return decoder(data)
    except _TooLarge:
        raise ValueError(f"Decompressed {name} data exceeds {MAX_INDEX_SIZE} bytes") from None
    except _ERRORS as e:
        raise ValueError(f"Corrupt {name} data: {e}") from e


def decompress_text(data: bytes, encoding: str = 'utf-8') -> str:
    return decompress_bytes(data).decode(encoding)
