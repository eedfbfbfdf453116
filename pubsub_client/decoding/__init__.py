"""
Payload decoding for bus events

Provides:
- Schema-aware Avro decoding
- Schema-less JSON decoding with a raw-bytes fallback
- Recursive normalization of decoded values
"""

from .payload import (
    NOTE_KEY,
    RAW_KEY,
    SCHEMALESS_NOTE,
    decode_schemaless,
    decode_with_schema,
    encode_with_schema,
    load_schema,
    normalize_value,
)

__all__ = [
    "NOTE_KEY",
    "RAW_KEY",
    "SCHEMALESS_NOTE",
    "decode_schemaless",
    "decode_with_schema",
    "encode_with_schema",
    "load_schema",
    "normalize_value",
]
