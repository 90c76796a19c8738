"""
Audit event publisher — routing decisions onto Kafka.

Consumers: dispute tooling, decision monitoring and warehouse replay jobs.
Events are keyed by correlation id so every record for one checkout lands
on the same partition. Publishing never fails a routing request.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import structlog

from stop_engine.core.config import get_settings
from stop_engine.schemas.decision import AuditRecord

logger = structlog.get_logger()

EVENT_TYPE = "ROUTING_DECISION_EMITTED"

_producer: Optional[Any] = None


def _serialize(value: dict) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


async def _producer_for(bootstrap: str):
    """Lazily started producer; aiokafka is only imported when Kafka is on."""
    global _producer
    if _producer is None:
        from aiokafka import AIOKafkaProducer

        producer = AIOKafkaProducer(
            bootstrap_servers=bootstrap,
            value_serializer=_serialize,
            key_serializer=lambda k: k.encode("utf-8"),
        )
        await producer.start()
        _producer = producer
        logger.info("kafka_producer_started", bootstrap=bootstrap)
    return _producer


async def stop_producer() -> None:
    global _producer
    if _producer is None:
        return
    producer, _producer = _producer, None
    await producer.stop()


def build_audit_event(record: AuditRecord) -> dict:
    """Compact event; the full record stays retrievable by correlation id + replay seed."""
    auth = record.auth_result
    return {
        "event_type": EVENT_TYPE,
        "correlation_id": record.correlation_id,
        "replay_seed": record.replay_seed,
        "user_id": record.user_id,
        "policy_version": record.policy_version,
        "policy_signature": record.policy_signature_short,
        "selected_route": record.selected_route,
        "selection_method": record.selection_method.type,
        "is_drt": record.is_drt,
        "resolved_child": record.resolved_child_credential,
        "approved": auth.approved if auth else None,
        "error_count": len(record.errors),
        "timestamp": record.timestamp,
    }


async def publish_audit_event(record: AuditRecord) -> bool:
    """True when the event was acknowledged by the broker."""
    settings = get_settings()
    if not settings.kafka_enabled:
        return False

    try:
        producer = await _producer_for(settings.kafka_bootstrap)
        await producer.send_and_wait(
            settings.kafka_topic_audit_events,
            value=build_audit_event(record),
            key=record.correlation_id,
        )
    except Exception as e:
        # broker trouble must not fail checkout
        logger.warning("kafka_publish_failed", correlation_id=record.correlation_id, error=str(e))
        return False

    logger.info("kafka_event_published", correlation_id=record.correlation_id)
    return True
