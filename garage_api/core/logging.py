import logging
import sys


class StoreContextFormatter(logging.Formatter):
    """Formatter that tolerates records without a ``store`` extra."""

    def format(self, record):
        if not hasattr(record, "store"):
            record.store = "-"
        return super().format(record)


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StoreContextFormatter(
        "%(asctime)s %(levelname)s %(name)s [store=%(store)s] - %(message)s"
    ))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
    )
