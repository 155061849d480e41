"""RabbitMQ message flows with retry and dead-letter queues."""

__version__ = "0.1.0"