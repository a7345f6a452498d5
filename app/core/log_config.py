import logging


def configure_logging(level: str = "INFO") -> None:
    log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # urllib3 logs every RPC round-trip at DEBUG
    logging.getLogger("urllib3").setLevel(max(log_level, logging.INFO))
