from .inmemory_db import InMemDB
from .kafka import BROKER, AIOKafkaConsumerMock, AIOKafkaProducerMock
from .setup import install_inmemory_db, install_inmemory_kafka

__all__ = [
    "BROKER",
    "AIOKafkaConsumerMock",
    "AIOKafkaProducerMock",
    "InMemDB",
    "install_inmemory_db",
    "install_inmemory_kafka",
]
