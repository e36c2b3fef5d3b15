"""Taskrelay — durable at-least-once task dispatch over RabbitMQ and Redis."""

__version__ = "0.1.0"
