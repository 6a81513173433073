
from kafka import KafkaProducer
from kafka.errors import KafkaError
from loguru import logger
import json
from storefront.core.config import settings

_producer = None

def get_producer() -> KafkaProducer:
    global _producer
    if _producer is None:
        _producer = KafkaProducer(
            bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            key_serializer=lambda v: (v.encode("utf-8") if isinstance(v, str) else v),
            linger_ms=5,
            retries=3,
        )
    return _producer

def send(topic: str, key: str, value: dict):
    if not settings.EVENTS_ENABLED:
        logger.debug(f"events disabled, dropping {value.get('type')} for {key}")
        return
    try:
        p = get_producer()
        p.send(topic, key=key, value=value)
        p.flush(5)
    except KafkaError as exc:
        # order state is already persisted; a lost notification must not undo it
        logger.warning(f"failed to publish {value.get('type')} for {key}: {exc}")

def order_event(event_type: str, order_id: int, **fields):
    send(settings.TOPIC_ORDER_EVENTS, key=str(order_id), value={"type": event_type, "order_id": order_id, **fields})

def inventory_event(event_type: str, key: str, **fields):
    send(settings.TOPIC_INVENTORY_EVENTS, key=key, value={"type": event_type, **fields})
