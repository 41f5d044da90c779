import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

_INITIALIZED = False

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class ContextFormatter(logging.Formatter):
    """Append the `extra={...}` context of a record as key=value pairs.

    Call sites log like:
        log.info("Query completed", extra={"system": "sales_pg", "rows": 12})
    which renders as:
        ... | db.postgres | Query completed | system=sales_pg rows=12
    """

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        ctx = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")}
        if not ctx:
            return base
        pairs = " ".join(f"{k}={v}" for k, v in sorted(ctx.items()))
        return f"{base} | {pairs}"


def init_logging(
    log_level: str = "INFO",
    log_file: str = "logs/report_engine.log",
    max_bytes: int = 5 * 1024 * 1024,  # 5 MB
    backup_count: int = 5,
) -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return

    level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = ContextFormatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        )
    for h in handlers:
        h.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers)
    _INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
