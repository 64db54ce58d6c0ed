import logging
import sys
import threading
from typing import Set


MASK = "****"

_secrets_lock = threading.Lock()
_secrets: Set[str] = set()


def register_secret(value: str) -> None:
    """
    로그/요약 출력에서 가릴 시크릿 값을 등록한다.
    너무 짧은 값은 일반 단어까지 가려버리므로 무시한다.
    """
    if not value or len(value) < 4:
        return
    with _secrets_lock:
        _secrets.add(value)
        # 여러 줄 시크릿(JSON 키 등)은 줄 단위로도 가린다.
        for line in value.splitlines():
            line = line.strip()
            if len(line) >= 8:
                _secrets.add(line)


def mask_secrets(text: str) -> str:
    with _secrets_lock:
        known = sorted(_secrets, key=len, reverse=True)
    for secret in known:
        if secret in text:
            text = text.replace(secret, MASK)
    return text


class SecretMaskingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(verbosity: int = 0) -> None:
    level = logging.INFO
    if verbosity >= 1:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, SecretMaskingFilter) for f in handler.filters):
            handler.addFilter(SecretMaskingFilter())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
