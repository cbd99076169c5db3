"""Logging setup for the Sogolo backend."""

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure process-wide logging. Later calls leave existing handlers alone."""
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger("sogolo").setLevel(level.upper())


def get_logger(name: str) -> logging.Logger:
    """Get a named logger under the sogolo hierarchy."""
    return logging.getLogger(name)


def log_transaction_event(
    logger: logging.Logger,
    event: str,
    transaction_id: str,
    actor_id: str,
    **details,
) -> None:
    """Log a request against a transaction as 'event | id=... | actor=... | k=v'."""
    parts = [event, f"id={transaction_id}", f"actor={actor_id}"]
    parts.extend(f"{key}={value}" for key, value in details.items() if value is not None)
    logger.info(" | ".join(parts))
