# Messaging package.
#
#   events - EventEnvelope, domain payloads and the JSON wire codec
#   bus - MessageBus interface, Subscription and the RabbitMQ implementation
#   memory - broker-free implementation with topic routing for dev and tests
from ecommerce.messaging.bus import MessageBus, RabbitMQMessageBus, Subscription
from ecommerce.messaging.events import EventEnvelope, decode_envelope, encode_envelope
from ecommerce.messaging.memory import InMemoryMessageBus, topic_matches

__all__ = [
    "EventEnvelope",
    "InMemoryMessageBus",
    "MessageBus",
    "RabbitMQMessageBus",
    "Subscription",
    "decode_envelope",
    "encode_envelope",
    "topic_matches",
]
