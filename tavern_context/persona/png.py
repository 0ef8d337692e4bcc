from __future__ import annotations

import base64
import binascii
import struct

from ..errors import PersonaDocumentError

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
CARD_TEXT_KEYWORD = b"chara"


def extract_card_json(png_bytes: bytes) -> str:
    """Return the card JSON stored in the ``chara`` tEXt chunk of a PNG image."""
    if not png_bytes.startswith(PNG_SIGNATURE):
        raise PersonaDocumentError("invalid PNG signature")

    offset = len(PNG_SIGNATURE)
    total = len(png_bytes)
    while offset + 8 <= total:
        (length,) = struct.unpack(">I", png_bytes[offset : offset + 4])
        chunk_type = png_bytes[offset + 4 : offset + 8]
        data_start = offset + 8
        data_end = data_start + length
        if data_end + 4 > total:
            raise PersonaDocumentError("truncated PNG chunk")
        chunk = png_bytes[data_start:data_end]
        offset = data_end + 4  # skip CRC

        if chunk_type == b"tEXt":
            keyword, sep, text = chunk.partition(b"\x00")
            if sep and keyword == CARD_TEXT_KEYWORD:
                return _decode_card_text(text)
        elif chunk_type == b"IEND":
            break

    raise PersonaDocumentError("character data not found in PNG")


def _decode_card_text(text: bytes) -> str:
    try:
        decoded = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        decoded = text
    try:
        return decoded.decode("utf-8")
    except UnicodeDecodeError:
        return decoded.decode("latin-1")
