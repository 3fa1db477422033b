import pytest

from pubsub_session import InvalidFilter, InvalidTopic
from pubsub_session.core import topic_matcher


# ============================================================================
# MATCHING
# ============================================================================


@pytest.mark.parametrize(
    "topic_filter, topic, expected",
    [
        ("a/+/c", "a/b/c", True),
        ("a/+/c", "a/b/c/d", False),
        ("a/#", "a", True),
        ("a/#", "a/b", True),
        ("a/#", "a/b/c", True),
        ("+/b", "a/b/c", False),
        ("sensor/+/temp", "sensor/room1/temp", True),
        ("sensor/+/temp", "sensor/room1/humidity", False),
        ("sensor/+/temp", "sensor/temp", False),
        ("a/b/c", "a/b/c", True),
        ("a/b/c", "a/b", False),
        ("a/b", "a/b/c", False),
        ("#", "a/b/c", True),
        ("+", "a", True),
        ("+", "a/b", False),
        ("+/+", "a/b", True),
        ("a/+", "a/", True),
        ("/+", "/finance", True),
        ("+/#", "a", True),
    ],
)
def test_matches_reference_table(topic_filter, topic, expected):
    assert topic_matcher.matches(topic_filter, topic) is expected


@pytest.mark.parametrize(
    "topic_filter, topic, expected",
    [
        ("#", "$SYS/uptime", False),
        ("+/uptime", "$SYS/uptime", False),
        ("$SYS/#", "$SYS/uptime", True),
        ("$SYS/+", "$SYS/uptime", True),
        ("a/#", "a/$internal", True),
    ],
)
def test_reserved_topics_need_literal_first_segment(topic_filter, topic, expected):
    assert topic_matcher.matches(topic_filter, topic) is expected


# ============================================================================
# VALIDATION
# ============================================================================


@pytest.mark.parametrize("topic_filter", ["a/b", "a/+/c", "#", "a/#", "+", "+/+/#", "$SYS/#"])
def test_validate_filter_accepts(topic_filter):
    assert topic_matcher.validate_filter(topic_filter) == topic_filter


@pytest.mark.parametrize("topic_filter", ["", "a/#/c", "a/b#", "a+/b", "#/a", "a/++"])
def test_validate_filter_rejects(topic_filter):
    with pytest.raises(InvalidFilter) as exc_info:
        topic_matcher.validate_filter(topic_filter)
    assert exc_info.value.topic == topic_filter


@pytest.mark.parametrize("topic", ["", "a/+", "a/#", "+"])
def test_validate_topic_rejects_wildcards_and_empty(topic):
    with pytest.raises(InvalidTopic):
        topic_matcher.validate_topic(topic)


def test_is_wildcard():
    assert topic_matcher.is_wildcard("a/+/c")
    assert topic_matcher.is_wildcard("a/#")
    assert not topic_matcher.is_wildcard("a/b/c")
