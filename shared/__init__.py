"""Code shared by every service: event schemas, Kafka clients, logging, database helpers."""
