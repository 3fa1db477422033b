import pytest

from pubsub_session import Message, PayloadHandler


def test_encode_bytes_and_text():
    handler = PayloadHandler()
    assert handler.encode(b"\x00\x01") == b"\x00\x01"
    assert handler.encode(bytearray(b"ab")) == b"ab"
    assert handler.encode("21.5 °C") == "21.5 °C".encode("utf-8")
    assert handler.encode(None) == b""


def test_encode_json_values():
    handler = PayloadHandler()
    assert handler.encode({"temp": 21.5, "unit": "C"}) == b'{"temp":21.5,"unit":"C"}'
    assert handler.encode([0, 1, 2]) == b"[0,1,2]"
    assert handler.encode({1: "a"}) == b'{"1":"a"}'
    assert handler.encode(42) == b"42"


def test_encode_unserializable_raises_value_error():
    with pytest.raises(ValueError):
        PayloadHandler().encode(object())


def test_decode_json_from_message_bytes_and_str():
    handler = PayloadHandler()
    message = Message(topic="a/b", payload=b'{"state": "ONLINE"}')
    assert handler.decode_json(message) == {"state": "ONLINE"}
    assert handler.decode_json(b"[1, 2]") == [1, 2]
    assert handler.decode_json("3") == 3


def test_decode_invalid_json_raises_value_error():
    with pytest.raises(ValueError):
        PayloadHandler().decode_json(b"not json")


def test_preview_truncates():
    assert PayloadHandler.preview(b"x" * 60) == "x" * 50 + "..."
    assert PayloadHandler.preview("short") == "short"
    assert PayloadHandler.preview(b"abcdef", output_length=3) == "abc..."
