import logging


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger. Call once at startup."""

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
    )
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
