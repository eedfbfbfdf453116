"""Payload decoding for bus events.

Two paths produce a ``DecodedEvent`` from raw event bytes:

- ``decode_with_schema`` reads Avro binary data against a schema and is the
  preferred path whenever the topic schema could be resolved.
- ``decode_schemaless`` is the last-resort fallback. It tries JSON and, when
  that fails, surfaces the raw bytes instead of raising.

Both paths run their output through ``normalize_value`` so handlers only ever
see mappings, lists, scalars and None.
"""
import base64
import io
from collections.abc import Mapping
from typing import Any

import fastavro
import orjson

from ..errors import DecodeError
from ..event_models import DecodedEvent, DecodedValue

RAW_KEY = "_raw"
NOTE_KEY = "_note"
SCHEMALESS_NOTE = (
    "Could not decode payload without a schema. Resolve the topic schema "
    "and decode with decode_with_schema."
)

# Marker for payloads that are not JSON at all
_NOT_JSON = object()


def normalize_value(value: Any) -> DecodedValue:
    """
    Recursively convert a decoded value into plain structured data.

    Mappings become dicts with string keys, sequences and sets become lists,
    binary values become base64 text. Other scalars and None pass through.
    """
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return {str(k): normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [normalize_value(item) for item in value]
    return value


def load_schema(definition: Any) -> dict:
    """
    Parse an Avro schema definition.

    Args:
        definition: Schema as JSON text/bytes, a mapping, or an already
            parsed fastavro schema

    Returns:
        Parsed schema usable by the fastavro reader and writer

    Raises:
        DecodeError: If the definition is empty or not a valid Avro schema
    """
    if definition is None:
        raise DecodeError("Schema definition cannot be empty")

    if isinstance(definition, (str, bytes, bytearray)):
        if not definition.strip():
            raise DecodeError("Schema definition cannot be empty")
        try:
            definition = orjson.loads(definition)
        except orjson.JSONDecodeError as e:
            raise DecodeError("Schema definition is not valid JSON") from e

    try:
        return fastavro.parse_schema(definition)
    except Exception as e:
        raise DecodeError("Schema definition is not a valid Avro schema") from e


def decode_with_schema(payload: bytes, schema: Any) -> DecodedEvent:
    """
    Decode an Avro binary payload against a schema.

    Args:
        payload: Raw event bytes
        schema: Avro schema (anything ``load_schema`` accepts)

    Returns:
        Mapping of the schema's fields to normalized values

    Raises:
        DecodeError: On empty or malformed payloads and schema/data mismatch
    """
    if not payload:
        raise DecodeError("Payload cannot be empty", payload=b"")

    parsed = load_schema(schema)
    buffer = io.BytesIO(payload)
    try:
        record = fastavro.schemaless_reader(buffer, parsed)
    except Exception as e:
        raise DecodeError("Failed to decode payload with schema", payload=payload) from e

    if buffer.tell() != len(payload):
        raise DecodeError(
            f"Schema/data mismatch: {len(payload) - buffer.tell()} trailing bytes after record",
            payload=payload,
        )

    if not isinstance(record, Mapping):
        raise DecodeError(
            f"Schema does not describe a record (decoded {type(record).__name__})",
            payload=payload,
        )

    return normalize_value(record)


def decode_schemaless(payload: bytes) -> DecodedEvent:
    """
    Best-effort decode without a schema. Never raises.

    A UTF-8 JSON object is returned as a mapping. Anything else yields a
    mapping holding the base64 payload under ``_raw`` and an explanation
    under ``_note``.
    """
    try:
        document = orjson.loads(payload)
    except (orjson.JSONDecodeError, TypeError):
        document = _NOT_JSON

    if document is None:
        return {}
    if isinstance(document, dict):
        return normalize_value(document)

    return {
        RAW_KEY: base64.b64encode(bytes(payload or b"")).decode("ascii"),
        NOTE_KEY: SCHEMALESS_NOTE,
    }


def encode_with_schema(schema: Any, record: Mapping[str, Any]) -> bytes:
    """Encode a record as Avro binary data (no container header)."""
    parsed = load_schema(schema)
    buffer = io.BytesIO()
    fastavro.schemaless_writer(buffer, parsed, record)
    return buffer.getvalue()
