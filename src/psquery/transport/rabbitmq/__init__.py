"""RabbitMQ transport: a direct exchange routed by channel name."""
