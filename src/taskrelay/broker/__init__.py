"""Durable queue adapters."""

from taskrelay.broker.base import Broker, Delivery, connect_with_retry
from taskrelay.broker.kombu_broker import KombuBroker

__all__ = ["Broker", "Delivery", "KombuBroker", "connect_with_retry"]
