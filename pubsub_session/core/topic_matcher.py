"""
Topic Filter Matching and Validation.

This module decides whether a subscription filter covers a concrete topic and
validates filters and topics supplied by callers. Topics and filters are
sequences of segments separated by `/`:

    sensor/room1/temp

Filters may contain two wildcards:

    +   matches exactly one segment            sensor/+/temp
    #   matches the remaining segments,        sensor/#
        including none; only legal last

Topics whose first segment starts with `$` are reserved for system and internal
channels. A wildcard in the first filter position never matches them, so a
broad `#` or `+/...` subscription does not silently sweep them up; they must
be named literally (`$SYS/#`).

All functions are pure and run in O(segments).

Example:
    >>> matches("sensor/+/temp", "sensor/room1/temp")
    True
    >>> matches("sensor/#", "sensor")
    True
    >>> matches("#", "$SYS/uptime")
    False
"""
import logging

from .exceptions import InvalidFilter, InvalidTopic

logger = logging.getLogger(__name__)

SEPARATOR = "/"
SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"
RESERVED_PREFIX = "$"


def split(value: str) -> list[str]:
    """Split a topic or filter into its segments."""
    return value.split(SEPARATOR)


def matches(topic_filter: str, topic: str) -> bool:
    """
    Decide whether a topic filter matches a concrete topic.

    Args:
        topic_filter: Subscription filter, possibly with `+` and `#`
        topic: Concrete topic of a message

    Returns:
        True if the filter covers the topic
    """
    filter_segments = split(topic_filter)
    topic_segments = split(topic)
    reserved = topic.startswith(RESERVED_PREFIX)

    for index, segment in enumerate(filter_segments):
        wildcard = segment in (SINGLE_LEVEL, MULTI_LEVEL)
        if wildcard and index == 0 and reserved:
            return False

        if segment == MULTI_LEVEL:
            # Only legal as the final segment; covers zero or more remaining segments
            return index == len(filter_segments) - 1

        if index >= len(topic_segments):
            return False

        if segment == SINGLE_LEVEL:
            continue

        if segment != topic_segments[index]:
            return False

    return len(filter_segments) == len(topic_segments)


def validate_filter(topic_filter: str) -> str:
    """
    Validate a subscription filter.

    Rules:
        - The filter must be a non-empty string
        - `+` must occupy an entire segment
        - `#` must occupy an entire segment and be the last one

    Args:
        topic_filter: Filter to validate

    Returns:
        The filter unchanged

    Raises:
        InvalidFilter: If the filter breaks a rule
    """
    if not isinstance(topic_filter, str) or not topic_filter:
        raise InvalidFilter("Topic filter must be a non-empty string", topic=topic_filter)

    segments = split(topic_filter)
    last = len(segments) - 1
    for index, segment in enumerate(segments):
        if SINGLE_LEVEL in segment and segment != SINGLE_LEVEL:
            raise InvalidFilter(
                f"'{SINGLE_LEVEL}' must occupy an entire segment (segment {index})",
                topic=topic_filter,
            )
        if MULTI_LEVEL in segment and (segment != MULTI_LEVEL or index != last):
            raise InvalidFilter(
                f"'{MULTI_LEVEL}' must be the last segment and occupy it entirely",
                topic=topic_filter,
            )
    return topic_filter


def validate_topic(topic: str) -> str:
    """
    Validate a concrete publish topic.

    Raises:
        InvalidTopic: If the topic is empty or contains a wildcard character
    """
    if not isinstance(topic, str) or not topic:
        raise InvalidTopic("Topic must be a non-empty string", topic=topic)
    if SINGLE_LEVEL in topic or MULTI_LEVEL in topic:
        raise InvalidTopic("Topic must not contain wildcards (+ or #)", topic=topic)
    return topic


def is_wildcard(topic_filter: str) -> bool:
    return any(segment in (SINGLE_LEVEL, MULTI_LEVEL) for segment in split(topic_filter))


__all__ = [
    "SEPARATOR",
    "SINGLE_LEVEL",
    "MULTI_LEVEL",
    "RESERVED_PREFIX",
    "split",
    "matches",
    "validate_filter",
    "validate_topic",
    "is_wildcard",
]
