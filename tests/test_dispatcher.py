"""
Dispatcher tests: QoS bookkeeping on the read path, bounded work queue,
backpressure and per-subscription ordering.
"""
import threading
import time

import pytest

from pubsub_session import DispatchOverload, Packet, PacketType, QoS
from pubsub_session.engine.dispatcher import Dispatcher
from pubsub_session.engine.inflight import InFlightTable
from pubsub_session.engine.message_handler import MessageHandlerBase
from pubsub_session.engine.subscription_registry import SubscriptionRegistry
from tests.mock_peer import BlockingHandler, RecordingHandler, publish_packet, wait_until


def make_dispatcher(handlers: dict, capacity=10, worker_count=2, enqueue_timeout=1.0, **kwargs):
    registry = SubscriptionRegistry()
    for topic_filter, handler in handlers.items():
        registry.confirm_grant(registry.subscribe(topic_filter, 2, handler), 2)
    sent: list[Packet] = []
    dispatcher = Dispatcher(
        registry,
        InFlightTable(max_retries=2, retry_interval=5.0),
        send=sent.append,
        capacity=capacity,
        worker_count=worker_count,
        enqueue_timeout=enqueue_timeout,
        **kwargs,
    )
    return dispatcher.start(), sent


# ============================================================================
# QOS BOOKKEEPING
# ============================================================================


class TestInboundQoS:
    """Acknowledgments sent by the read path."""

    def test_qos0_delivers_without_ack(self):
        handler = RecordingHandler()
        dispatcher, sent = make_dispatcher({"a/#": handler})
        try:
            dispatcher.handle(publish_packet("a/b", b"1"))
            assert handler.wait_for(1)
            assert sent == []
        finally:
            dispatcher.stop()

    def test_qos1_delivers_and_sends_puback(self):
        handler = RecordingHandler()
        dispatcher, sent = make_dispatcher({"sensor/+/temp": handler})
        try:
            dispatcher.handle(publish_packet("sensor/room1/temp", b"21.5", qos=1, packet_id=7))
            assert handler.wait_for(1)
            assert [(p.type, p.packet_id) for p in sent] == [(PacketType.PUBACK, 7)]
            assert handler.messages[0].qos == QoS.AT_LEAST_ONCE
        finally:
            dispatcher.stop()

    def test_qos2_replay_delivers_once_and_repeats_pubrec(self):
        handler = RecordingHandler()
        dispatcher, sent = make_dispatcher({"a/b": handler})
        try:
            dispatcher.handle(publish_packet("a/b", b"x", qos=2, packet_id=42))
            dispatcher.handle(publish_packet("a/b", b"x", qos=2, packet_id=42, dup=True))
            assert handler.wait_for(1)
            time.sleep(0.1)

            assert len(handler.messages) == 1
            assert [(p.type, p.packet_id) for p in sent] == [(PacketType.PUBREC, 42), (PacketType.PUBREC, 42)]

            dispatcher.handle(Packet(type=PacketType.PUBREL, packet_id=42))
            assert sent[-1].type == PacketType.PUBCOMP
            assert dispatcher.inflight.incoming() == []
        finally:
            dispatcher.stop()

    def test_unknown_pubrel_still_answered(self):
        dispatcher, sent = make_dispatcher({})
        try:
            dispatcher.handle(Packet(type=PacketType.PUBREL, packet_id=5))
            assert [(p.type, p.packet_id) for p in sent] == [(PacketType.PUBCOMP, 5)]
        finally:
            dispatcher.stop()

    def test_outgoing_acknowledgments_complete_entries(self):
        completed = []
        dispatcher, sent = make_dispatcher({}, on_complete=completed.append)
        table = dispatcher.inflight
        try:
            table.track_outgoing(Packet(type=PacketType.PUBLISH, packet_id=1, topic="a", qos=QoS.AT_LEAST_ONCE))
            table.track_outgoing(Packet(type=PacketType.PUBLISH, packet_id=2, topic="b", qos=QoS.EXACTLY_ONCE))

            dispatcher.handle(Packet(type=PacketType.PUBACK, packet_id=1))
            dispatcher.handle(Packet(type=PacketType.PUBREC, packet_id=2))
            assert [(p.type, p.packet_id) for p in sent] == [(PacketType.PUBREL, 2)]
            dispatcher.handle(Packet(type=PacketType.PUBCOMP, packet_id=2))

            assert [e.packet_id for e in completed] == [1, 2]
            assert len(table) == 0
        finally:
            dispatcher.stop()

    def test_unknown_acknowledgment_is_ignored(self):
        completed = []
        dispatcher, sent = make_dispatcher({}, on_complete=completed.append)
        try:
            assert dispatcher.handle(Packet(type=PacketType.PUBACK, packet_id=99))
            assert completed == []
        finally:
            dispatcher.stop()

    def test_non_publish_packets_are_not_handled(self):
        dispatcher, _ = make_dispatcher({})
        try:
            assert dispatcher.handle(Packet(type=PacketType.SUBACK, packet_id=1, granted_qos=[0])) is False
        finally:
            dispatcher.stop()

    def test_on_received_called_once_per_new_message(self):
        received = []
        dispatcher, _ = make_dispatcher({}, on_received=received.append)
        try:
            dispatcher.handle(publish_packet("a", qos=2, packet_id=3))
            dispatcher.handle(publish_packet("a", qos=2, packet_id=3, dup=True))
            assert [m.topic for m in received] == ["a"]
        finally:
            dispatcher.stop()


# ============================================================================
# BACKPRESSURE
# ============================================================================


class TestBackpressure:
    """A full work queue blocks the read path instead of dropping messages."""

    def test_enqueue_beyond_capacity_blocks_without_drop_or_reorder(self):
        handler = BlockingHandler()
        capacity = 3
        dispatcher, _ = make_dispatcher({"a": handler}, capacity=capacity, worker_count=1, enqueue_timeout=None)
        progress = []

        def reader():
            for n in range(capacity + 1):
                dispatcher.handle(publish_packet("a", str(n).encode()))
                progress.append(n)

        thread = threading.Thread(target=reader, daemon=True)
        try:
            thread.start()
            assert handler.entered.wait(2.0)
            assert wait_until(lambda: len(progress) == capacity)
            time.sleep(0.2)

            # the (C+1)-th enqueue is still blocked
            assert len(progress) == capacity
            assert thread.is_alive()
            assert dispatcher.outstanding == capacity

            handler.release()
            thread.join(2.0)
            assert not thread.is_alive()
            assert handler.wait_for(capacity + 1)
            assert handler.payloads == [b"0", b"1", b"2", b"3"]
        finally:
            handler.release()
            dispatcher.stop()

    def test_overload_after_dispatch_timeout(self):
        handler = BlockingHandler()
        dispatcher, _ = make_dispatcher({"a": handler}, capacity=1, worker_count=1, enqueue_timeout=0.2)
        try:
            dispatcher.handle(publish_packet("a", b"first"))
            assert handler.entered.wait(2.0)

            started = time.monotonic()
            with pytest.raises(DispatchOverload):
                dispatcher.handle(publish_packet("a", b"second"))
            assert time.monotonic() - started >= 0.15
        finally:
            handler.release()
            dispatcher.stop()

    def test_overloaded_qos2_delivery_is_accepted_on_redelivery(self):
        handler = BlockingHandler()
        dispatcher, sent = make_dispatcher({"a": handler}, capacity=1, worker_count=1, enqueue_timeout=0.2)
        try:
            dispatcher.handle(publish_packet("a", b"first"))
            assert handler.entered.wait(2.0)

            with pytest.raises(DispatchOverload):
                dispatcher.handle(publish_packet("a", b"second", qos=2, packet_id=7))
            assert sent == []
            assert dispatcher.inflight.incoming() == []

            handler.release()
            assert wait_until(lambda: dispatcher.outstanding == 0)
            dispatcher.handle(publish_packet("a", b"second", qos=2, packet_id=7, dup=True))
            assert handler.wait_for(2)
            assert handler.payloads == [b"first", b"second"]
            assert [(p.type, p.packet_id) for p in sent] == [(PacketType.PUBREC, 7)]
        finally:
            handler.release()
            dispatcher.stop()

    def test_one_permit_per_matching_subscription(self):
        first, second = BlockingHandler(), BlockingHandler()
        dispatcher, _ = make_dispatcher({"a/#": first, "a/+": second}, capacity=2, worker_count=2, enqueue_timeout=0.2)
        try:
            dispatcher.handle(publish_packet("a/b", b"1"))
            assert wait_until(lambda: dispatcher.outstanding == 2)
            with pytest.raises(DispatchOverload):
                dispatcher.handle(publish_packet("a/b", b"2"))
        finally:
            first.release()
            second.release()
            dispatcher.stop()


# ============================================================================
# ORDERING AND HANDLER FAILURES
# ============================================================================


class TestOrdering:
    """Per-subscription order and isolation from handler errors."""

    def test_per_subscription_order_with_many_workers(self):
        handlers = {f"room/{n}/#": RecordingHandler() for n in range(5)}
        dispatcher, _ = make_dispatcher(handlers, capacity=100, worker_count=4)
        try:
            for i in range(40):
                for n in range(5):
                    dispatcher.handle(publish_packet(f"room/{n}/temp", str(i).encode()))

            for handler in handlers.values():
                assert handler.wait_for(40)
                assert handler.payloads == [str(i).encode() for i in range(40)]
        finally:
            dispatcher.stop()

    def test_lane_is_stable_per_filter(self):
        dispatcher, _ = make_dispatcher({}, worker_count=4)
        try:
            lanes = {dispatcher.lane_for("sensor/+/temp") for _ in range(10)}
            assert len(lanes) == 1
            assert 0 <= lanes.pop() < 4
        finally:
            dispatcher.stop()

    def test_handler_exception_does_not_stop_worker(self):
        delivered = []

        def flaky(message):
            if message.payload == b"bad":
                raise RuntimeError("handler failure")
            delivered.append(message.payload)

        dispatcher, _ = make_dispatcher({"a": MessageHandlerBase(flaky)}, capacity=1, worker_count=1)
        try:
            dispatcher.handle(publish_packet("a", b"bad"))
            dispatcher.handle(publish_packet("a", b"good"))
            assert wait_until(lambda: delivered == [b"good"])
            assert wait_until(lambda: dispatcher.outstanding == 0)
        finally:
            dispatcher.stop()

    def test_stop_drains_queued_deliveries(self):
        handler = RecordingHandler()
        dispatcher, _ = make_dispatcher({"a": handler}, capacity=50, worker_count=1)
        for n in range(20):
            dispatcher.handle(publish_packet("a", str(n).encode()))
        assert dispatcher.stop(timeout=2.0)
        assert len(handler.messages) == 20

    def test_invalid_sizing_rejected(self):
        with pytest.raises(ValueError):
            Dispatcher(SubscriptionRegistry(), InFlightTable(), send=print, capacity=0)
