"""
dispatcher
----------

배포 대상 환경의 서비스로 최종 배포 호출을 한 번 보낸다.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Set, Tuple

from .credentials import Session
from .environments import EnvironmentTarget
from .errors import DeploymentRejected, TransientError
from .image_builder import ImageReference
from .logging_utils import get_logger
from .retry import call_with_retry
from .subprocess_utils import CommandFailed


logger = get_logger(__name__)


class DeployPlatform(Protocol):
    def deploy(
        self,
        service_name: str,
        region: str,
        image_url: str,
        traffic_tag: str,
        session: Optional[Session] = None,
    ) -> Optional[str]:
        ...


@dataclass(frozen=True)
class DeployResult:
    target: EnvironmentTarget
    image: ImageReference
    traffic_tag: str
    url: Optional[str] = None
    attempts: int = 1


class DeploymentDispatcher:
    """
    하나의 PipelineRun 에 속한다. 대상별로 배포 호출은 정확히 한 번만 허용한다.
    """

    def __init__(
        self,
        platform: DeployPlatform,
        *,
        attempts: int = 3,
        base_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._platform = platform
        self._attempts = attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._dispatched: Set[Tuple[str, str]] = set()

    def deploy(
        self,
        target: EnvironmentTarget,
        image: ImageReference,
        *,
        session: Optional[Session] = None,
    ) -> DeployResult:
        key = (target.environment.value, target.service_name)
        if key in self._dispatched:
            raise RuntimeError(f"이 실행에서 이미 배포한 대상입니다: {target}")
        self._dispatched.add(key)

        logger.info("배포 시작: target=%s image=%s tag=%s", target, image.url, target.traffic_tag)
        attempts = 0

        def _once() -> Optional[str]:
            nonlocal attempts
            attempts += 1
            return self._platform.deploy(
                target.service_name,
                target.region,
                image.url,
                target.traffic_tag,
                session,
            )

        try:
            url = call_with_retry(
                _once,
                attempts=self._attempts,
                base_delay=self._base_delay,
                description=f"deploy {target}",
                sleep=self._sleep,
            )
        except TransientError as e:
            raise DeploymentRejected(str(target), f"재시도 {attempts}회 후에도 실패: {e}") from e
        except CommandFailed as e:
            raise DeploymentRejected(str(target), str(e)) from e

        return DeployResult(
            target=target,
            image=image,
            traffic_tag=target.traffic_tag,
            url=url,
            attempts=attempts,
        )
