"""
retry
-----

단계 내부에서만 쓰이는 제한된 재시도 헬퍼.
상태 머신 수준에서는 재시도하지 않는다.
"""

from __future__ import annotations

import time
from typing import Callable, Tuple, Type, TypeVar

from .errors import TransientError
from .logging_utils import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


def backoff_delays(attempts: int, base_delay: float, max_delay: float = 60.0) -> list[float]:
    """attempts 회 시도 사이의 대기 시간 목록 (지수 증가, max_delay 상한)."""
    return [min(base_delay * (2 ** i), max_delay) for i in range(max(attempts - 1, 0))]


def call_with_retry(
    func: Callable[[], T],
    *,
    attempts: int,
    base_delay: float,
    description: str,
    max_delay: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    func 를 최대 attempts 번 호출한다.

    retry_on 에 해당하는 예외만 재시도하고, 마지막 시도의 예외는 그대로 올린다.
    그 외 예외(인증 거부 등)는 즉시 전파된다.
    """
    if attempts < 1:
        raise ValueError(f"attempts 는 1 이상이어야 합니다: {attempts}")

    delays = backoff_delays(attempts, base_delay, max_delay)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt >= attempts:
                logger.error("%s: 재시도 %d회 모두 실패", description, attempts)
                raise
            delay = delays[attempt - 1]
            logger.warning(
                "%s: 일시적 오류, %.1f초 후 재시도 (%d/%d): %s",
                description,
                delay,
                attempt,
                attempts,
                e,
            )
            sleep(delay)
    raise AssertionError("unreachable")
