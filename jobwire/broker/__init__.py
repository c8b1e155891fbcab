"""
Broker module.
Contains the broker interfaces and the Redis streams implementation.
"""

from jobwire.broker.base import Broker, BrokerMessage
from jobwire.broker.redis_streams import RedisMessage, RedisStreamBroker

__all__ = [
    "Broker",
    "BrokerMessage",
    "RedisMessage",
    "RedisStreamBroker",
]
