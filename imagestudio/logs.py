import json
import logging


def configure_logging(level):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def log_step(logger, label, level=logging.INFO, **details):
    """Log a step label with its details serialised as JSON."""
    if details:
        logger.log(level, "%s - %s", label, json.dumps(details, default=str, sort_keys=True))
    else:
        logger.log(level, "%s", label)
