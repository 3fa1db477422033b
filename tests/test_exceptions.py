import logging

import pytest

from pubsub_session import (
    ConnectFailed,
    ConnectionLost,
    DeliveryFailed,
    DispatchOverload,
    HandshakeTimeout,
    InvalidFilter,
    InvalidTopic,
    NotConnected,
    OperationCancelled,
    PacketIdExhausted,
    SessionException,
    SessionFormatter,
    SessionLogger,
    SessionStateError,
    SubscriptionRejected,
    TransportError,
)
from pubsub_session.core.base import generate_unique_id, parse_qos
from pubsub_session.core.models import ErrorCategory


# ============================================================================
# ERROR CATEGORIES
# ============================================================================


@pytest.mark.parametrize(
    "exc_class, category",
    [
        (InvalidFilter, ErrorCategory.CALLER_MISUSE),
        (InvalidTopic, ErrorCategory.CALLER_MISUSE),
        (NotConnected, ErrorCategory.CALLER_MISUSE),
        (SessionStateError, ErrorCategory.CALLER_MISUSE),
        (OperationCancelled, ErrorCategory.CALLER_MISUSE),
        (HandshakeTimeout, ErrorCategory.TRANSIENT),
        (DeliveryFailed, ErrorCategory.TRANSIENT),
        (SubscriptionRejected, ErrorCategory.TRANSIENT),
        (PacketIdExhausted, ErrorCategory.TRANSIENT),
        (TransportError, ErrorCategory.TRANSIENT),
        (ConnectFailed, ErrorCategory.SESSION_FATAL),
        (ConnectionLost, ErrorCategory.SESSION_FATAL),
        (DispatchOverload, ErrorCategory.SESSION_FATAL),
    ],
)
def test_exception_categories(exc_class, category):
    error = exc_class("detail")
    assert isinstance(error, SessionException)
    assert error.category is category
    assert error.is_fatal is (category is ErrorCategory.SESSION_FATAL)


def test_exception_carries_context():
    cause = OSError("reset by peer")
    error = ConnectionLost("link down", client_id="gw", topic="a/b", packet_id=4, cause=cause)

    text = str(error)
    assert "link down" in text
    assert "client_id='gw'" in text
    assert "packet_id=4" in text
    assert error.cause is cause
    assert repr(error).startswith("ConnectionLost(category='session_fatal'")


def test_connect_failed_return_code():
    assert ConnectFailed("refused", return_code=5).return_code == 5


def test_category_override():
    assert TransportError("x", category=ErrorCategory.SESSION_FATAL).is_fatal


# ============================================================================
# BASE UTILITIES
# ============================================================================


@pytest.mark.parametrize("value, expected", [(0, 0), (1, 1), (2, 2), ("1", 1), (" 2 ", 2)])
def test_parse_qos_valid(value, expected):
    assert parse_qos(value) == expected


@pytest.mark.parametrize("value", [3, -1, "x", None, 1.0, True])
def test_parse_qos_invalid(value):
    with pytest.raises(ValueError):
        parse_qos(value)


def test_generate_unique_id():
    assert generate_unique_id("gateway").startswith("gateway-")
    assert "-" in generate_unique_id(None)
    assert generate_unique_id() != generate_unique_id()


def test_session_logger_merges_context(caplog):
    base = SessionLogger(logging.getLogger("pubsub_session.test"), extra={"client_id": "gw"}, merge_extra=True)
    log = base.bind(broker="loopback")

    with caplog.at_level(logging.INFO, logger="pubsub_session.test"):
        log.info("Connected", extra={"topic": "a/b"})

    record = caplog.records[-1]
    assert record.client_id == "gw"
    assert record.broker == "loopback"
    assert record.topic == "a/b"
    assert SessionFormatter().format(record) == "Connected client_id=gw broker=loopback topic=a/b"


def test_session_logger_excludes_fields(caplog):
    log = SessionLogger(
        logging.getLogger("pubsub_session.test"),
        extra={"client_id": "gw", "password": "secret"},
        merge_extra=True,
        exclude_extras=["password"],
    )
    with caplog.at_level(logging.INFO, logger="pubsub_session.test"):
        log.info("Connected")
    assert not hasattr(caplog.records[-1], "password")
