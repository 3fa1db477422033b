"""
Payload Encoding and Decoding.

The engine moves raw bytes, but callers rarely hold bytes. This module turns
the values callers publish into payload bytes and turns delivered payloads
back into Python objects.

Encoding rules:
    - bytes, bytearray, memoryview: sent as-is
    - str: UTF-8 encoded
    - None: empty payload
    - anything else: serialized to JSON with orjson

Example:
    >>> handler = PayloadHandler()
    >>> handler.encode({"temp": 21.5, "unit": "C"})
    b'{"temp":21.5,"unit":"C"}'
    >>> handler.decode_json(message)
    {'temp': 21.5, 'unit': 'C'}
"""
from typing import Any
import logging

import orjson

from .models import Message

logger = logging.getLogger(__name__)


class PayloadHandler:
    """
    Converter between caller values and payload bytes.

    Attributes:
        json_options: orjson option flags used for serialization
    """

    def __init__(self, json_options: int = orjson.OPT_NON_STR_KEYS):
        self.json_options = json_options

    def encode(self, payload: Any) -> bytes:
        """
        Encode a caller value into payload bytes.

        Args:
            payload: Value to publish

        Returns:
            Payload bytes

        Raises:
            ValueError: If the value cannot be serialized to JSON
        """
        if payload is None:
            return b""
        if isinstance(payload, bytes):
            return payload
        if isinstance(payload, (bytearray, memoryview)):
            return bytes(payload)
        if isinstance(payload, str):
            return payload.encode("utf-8")
        try:
            return orjson.dumps(payload, option=self.json_options)
        except TypeError as e:
            logger.error(f"Payload of type {type(payload).__name__} is not serializable: {e}")
            raise ValueError(f"Payload of type {type(payload).__name__} is not JSON serializable") from e

    def decode_json(self, message: Message | bytes | str) -> Any:
        """
        Parse a delivered payload as JSON.

        Args:
            message: A Message, or raw payload bytes/str

        Returns:
            Parsed JSON value

        Raises:
            ValueError: If the payload is not valid JSON
        """
        raw = message.payload if isinstance(message, Message) else message
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            logger.warning(f"Failed to decode JSON payload: {self.preview(raw)}")
            raise ValueError(f"Payload is not valid JSON: {e}") from e

    @staticmethod
    def preview(payload: bytes | str, output_length: int = 50) -> str:
        """
        Render a payload for logs, truncated to `output_length` characters.
        """
        if isinstance(payload, (bytes, bytearray)):
            payload = bytes(payload).decode("utf-8", errors="replace")
        if len(payload) > output_length:
            return payload[:output_length] + "..."
        return payload


__all__ = ["PayloadHandler"]
