"""
Lossless byte codec for room masks.

Masks are stored as a minimal 8-bit grayscale PNG: signature, IHDR, a tEXt
chunk with the normalized bounds as JSON, one IDAT holding a zlib stream of
stored (uncompressed) deflate blocks, and IEND. Any PNG reader can open the
result; the decoder only accepts what the encoder writes.
"""

import base64
import json
import logging
import struct
import zlib
from typing import List, Tuple

import numpy as np

from .core import Bounds, RoomMask

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
DATA_URL_PREFIX = "data:image/png;base64,"
BOUNDS_KEYWORD = b"bounds"
ZLIB_HEADER = b"\x78\x01"
MAX_STORED_BLOCK = 0xFFFF
ADLER_MOD = 65521


class MaskDecodeError(ValueError):
    """Base error for bytes that cannot be decoded into a RoomMask."""


class InvalidSignatureError(MaskDecodeError):
    """Input does not start with the PNG signature."""


class ChunkError(MaskDecodeError):
    """Chunk is truncated, missing or fails its CRC."""


class StreamFramingError(MaskDecodeError):
    """zlib / stored-block framing is malformed or the Adler-32 mismatches."""


class UnsupportedFormatError(MaskDecodeError):
    """Header or row data uses features this codec does not write."""


def crc32(data: bytes) -> int:
    """CRC-32 with the reflected 0xEDB88320 polynomial."""
    return zlib.crc32(data) & 0xFFFFFFFF


def adler32(data: bytes) -> int:
    """Adler-32 checksum (modulus 65521)."""
    return zlib.adler32(data) & 0xFFFFFFFF


def _chunk(chunk_type: bytes, data: bytes) -> bytes:
    return (
        struct.pack(">I", len(data))
        + chunk_type
        + data
        + struct.pack(">I", crc32(chunk_type + data))
    )


def _stored_deflate(raw: bytes) -> bytes:
    """Wrap raw bytes in a zlib stream made of stored deflate blocks."""
    out = bytearray(ZLIB_HEADER)
    offset = 0
    total = len(raw)
    while True:
        block = raw[offset:offset + MAX_STORED_BLOCK]
        offset += len(block)
        final = offset >= total
        out.append(1 if final else 0)
        out += struct.pack("<HH", len(block), len(block) ^ 0xFFFF)
        out += block
        if final:
            break
    out += struct.pack(">I", adler32(raw))
    return bytes(out)


def _inflate_stored(stream: bytes) -> bytes:
    """Unwrap a zlib stream of stored blocks, verifying framing and Adler-32."""
    if len(stream) < 2 + 4:
        raise StreamFramingError("zlib stream too short")
    cmf, flg = stream[0], stream[1]
    if cmf & 0x0F != 8 or ((cmf << 8) | flg) % 31 != 0:
        raise StreamFramingError("Invalid zlib header")
    if flg & 0x20:
        raise UnsupportedFormatError("Preset dictionaries are not supported")

    pos = 2
    end = len(stream) - 4
    raw = bytearray()
    final = False
    while not final:
        if pos >= end:
            raise StreamFramingError("Stream ended before the final block")
        header = stream[pos]
        pos += 1
        final = bool(header & 0x01)
        block_type = (header >> 1) & 0x03
        if block_type != 0:
            raise UnsupportedFormatError(f"Only stored blocks are supported, got type {block_type}")
        if pos + 4 > end:
            raise StreamFramingError("Truncated stored block header")
        length, nlength = struct.unpack("<HH", stream[pos:pos + 4])
        pos += 4
        if length != (nlength ^ 0xFFFF):
            raise StreamFramingError("Stored block LEN/NLEN mismatch")
        if pos + length > end:
            raise StreamFramingError("Truncated stored block data")
        raw += stream[pos:pos + length]
        pos += length

    if pos != end:
        raise StreamFramingError("Unexpected bytes after the final block")
    expected = struct.unpack(">I", stream[end:end + 4])[0]
    if adler32(bytes(raw)) != expected:
        raise StreamFramingError("Adler-32 checksum mismatch")
    return bytes(raw)


def _read_chunks(data: bytes) -> List[Tuple[bytes, bytes]]:
    chunks = []
    pos = len(PNG_SIGNATURE)
    while pos < len(data):
        if pos + 8 > len(data):
            raise ChunkError("Truncated chunk header")
        length = struct.unpack(">I", data[pos:pos + 4])[0]
        chunk_type = data[pos + 4:pos + 8]
        body_end = pos + 8 + length
        if body_end + 4 > len(data):
            raise ChunkError(f"Truncated {chunk_type!r} chunk")
        body = data[pos + 8:body_end]
        expected = struct.unpack(">I", data[body_end:body_end + 4])[0]
        if crc32(chunk_type + body) != expected:
            raise ChunkError(f"CRC mismatch in {chunk_type!r} chunk")
        chunks.append((chunk_type, body))
        pos = body_end + 4
        if chunk_type == b"IEND":
            break
    return chunks


def _parse_bounds(text: bytes) -> Bounds:
    keyword, _, value = text.partition(b"\x00")
    if keyword != BOUNDS_KEYWORD:
        return Bounds.full()
    try:
        return Bounds.from_dict(json.loads(value.decode("utf-8")))
    except (ValueError, KeyError, TypeError):
        logger.debug("Ignoring unreadable bounds metadata %r", value[:64])
        return Bounds.full()


def encode_room_mask(mask: RoomMask) -> bytes:
    """
    Encode a room mask to PNG bytes.

    Args:
        mask: RoomMask to encode

    Returns:
        Bytes of a valid 8-bit grayscale PNG carrying the bounds in a tEXt chunk
    """
    if mask.width <= 0 or mask.height <= 0:
        raise ValueError("Cannot encode a mask with non-positive dimensions")

    header = struct.pack(">IIBBBBB", mask.width, mask.height, 8, 0, 0, 0, 0)
    bounds_json = json.dumps(mask.bounds.to_dict(), separators=(",", ":"))
    text = BOUNDS_KEYWORD + b"\x00" + bounds_json.encode("utf-8")

    rows = np.zeros((mask.height, mask.width + 1), dtype=np.uint8)
    rows[:, 1:] = mask.data
    stream = _stored_deflate(rows.tobytes())

    return b"".join([
        PNG_SIGNATURE,
        _chunk(b"IHDR", header),
        _chunk(b"tEXt", text),
        _chunk(b"IDAT", stream),
        _chunk(b"IEND", b""),
    ])


def decode_room_mask(data: bytes) -> RoomMask:
    """
    Decode bytes written by encode_room_mask.

    Args:
        data: Encoded mask bytes

    Returns:
        The decoded RoomMask

    Raises:
        MaskDecodeError: on any structural, checksum or format problem
    """
    data = bytes(data)
    if not data.startswith(PNG_SIGNATURE):
        raise InvalidSignatureError("Missing PNG signature")

    chunks = _read_chunks(data)
    if not chunks or chunks[0][0] != b"IHDR":
        raise ChunkError("First chunk must be IHDR")
    if chunks[-1][0] != b"IEND":
        raise ChunkError("Missing IEND chunk")

    header = chunks[0][1]
    if len(header) != 13:
        raise ChunkError("IHDR must be 13 bytes")
    width, height, depth, color_type, compression, filter_method, interlace = struct.unpack(
        ">IIBBBBB", header
    )
    if width == 0 or height == 0:
        raise UnsupportedFormatError("Zero-sized image")
    if (depth, color_type, compression, filter_method, interlace) != (8, 0, 0, 0, 0):
        raise UnsupportedFormatError("Only 8-bit non-interlaced grayscale is supported")

    bounds = Bounds.full()
    idat = bytearray()
    seen_idat = False
    for chunk_type, body in chunks[1:-1]:
        if chunk_type == b"IDAT":
            seen_idat = True
            idat += body
            continue
        if seen_idat:
            raise ChunkError(f"Unexpected {chunk_type!r} chunk after image data")
        if chunk_type == b"tEXt":
            bounds = _parse_bounds(body)
    if not idat:
        raise ChunkError("Missing IDAT chunk")

    raw = _inflate_stored(bytes(idat))
    stride = width + 1
    if len(raw) != stride * height:
        raise StreamFramingError(
            f"Expected {stride * height} bytes of row data, got {len(raw)}"
        )
    rows = np.frombuffer(raw, dtype=np.uint8).reshape(height, stride)
    if np.any(rows[:, 0] != 0):
        raise UnsupportedFormatError("Only filter type 0 rows are supported")

    return RoomMask(width, height, bounds, rows[:, 1:].copy())


def encode_room_mask_to_data_url(mask: RoomMask) -> str:
    """Encode a mask as a base64 PNG data URL."""
    return DATA_URL_PREFIX + base64.b64encode(encode_room_mask(mask)).decode("ascii")


def decode_room_mask_from_data_url(url: str) -> RoomMask:
    """
    Decode a data URL produced by encode_room_mask_to_data_url.

    Raises:
        MaskDecodeError: if the prefix or base64 payload is invalid
    """
    if not url.startswith(DATA_URL_PREFIX):
        raise InvalidSignatureError("Unsupported data URL prefix")
    try:
        payload = base64.b64decode(url[len(DATA_URL_PREFIX):], validate=True)
    except ValueError as exc:
        raise MaskDecodeError(f"Invalid base64 payload: {exc}") from exc
    return decode_room_mask(payload)
