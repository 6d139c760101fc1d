"""Core infrastructure: logging, errors, metrics, middleware, queue."""
