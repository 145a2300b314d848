import logging
import sys
import threading


_secret_lock = threading.Lock()
_secret_values: set[str] = set()

REDACTED = "***"


def register_secret(value: str) -> None:
    """
    로그에 절대 노출되면 안 되는 값을 등록한다.
    너무 짧은 값은 일반 단어까지 가려버리므로 등록하지 않는다.
    """
    if not value or len(value) < 4:
        return
    with _secret_lock:
        _secret_values.add(value)


def redact(text: str) -> str:
    with _secret_lock:
        values = sorted(_secret_values, key=len, reverse=True)
    for value in values:
        if value in text:
            text = text.replace(value, REDACTED)
    return text


class RedactingFilter(logging.Filter):
    """등록된 secret 값을 로그 레코드에서 *** 로 치환한다."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(verbosity: int = 0) -> None:
    level = logging.INFO
    if verbosity >= 1:
        level = logging.DEBUG

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RedactingFilter())
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=[handler],
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
