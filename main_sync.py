import time
import logging

from pubsub_session import (
    AutoAckPeer,
    LoopbackTransport,
    Message,
    QoS,
    QueueHandler,
    SessionClient,
    SessionConfig,
    SessionEventType,
    SessionException,
    SessionFormatter,
)


handler = logging.StreamHandler()
handler.setFormatter(SessionFormatter())
logging.basicConfig(level=logging.INFO, handlers=[handler])

# Settings come from PUBSUB_* variables (or a .env file) when present.
CONFIG = SessionConfig.from_env(client_id="sensor-gateway", keepalive=5)


# Handler that logs each temperature reading it receives.
def temperature_handler(message: Message) -> None:
    logging.info(f"Temperature on {message.topic}: {message.as_text()} (qos={int(message.qos)})")


# Create a client over an in-process loopback peer that echoes publishes back.
def create_client() -> SessionClient:
    transport = LoopbackTransport(AutoAckPeer())
    return SessionClient(transport, CONFIG).connect()


def main():
    client = create_client()
    status = QueueHandler()
    try:
        client.subscribe("sensor/+/temperature", qos=QoS.AT_LEAST_ONCE, handler=temperature_handler)
        client.subscribe("sensor/#", qos=QoS.AT_MOST_ONCE, handler=status)

        for reading in range(3):
            try:
                token = client.publish(
                    f"sensor/room{reading}/temperature",
                    {"celsius": 20.5 + reading},
                    qos=QoS.EXACTLY_ONCE,
                )
                token.wait(timeout=2)
                logging.info(f"Delivered packet {token.packet_id}")
            except SessionException as e:
                logging.error(f"Publish failed: {e}")
            time.sleep(0.5)

        client.unsubscribe("sensor/#")
        logging.info(f"Status handler saw {status.messages.qsize()} messages")
    except KeyboardInterrupt:
        logging.info("Exiting...")
    finally:
        client.disconnect()

    for event in client.events.history(SessionEventType.STATE_CHANGED):
        logging.info(f"{event.previous_state} -> {event.state}")
    print(client.message_log.export_text())


if __name__ == "__main__":
    main()
