"""
image_builder
-------------

소스 리비전으로부터 이미지 태그를 만들고, docker build / 레지스트리 push 를 담당한다.

같은 리비전은 항상 같은 태그로 매핑되므로, 동시에 도는 실행이 같은 이미지를
푸시해도 잠금 없이 안전하다.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .config import PipelineConfig
from .credentials import Session
from .errors import AuthenticationFailed, BuildFailed, RegistryPushFailed, TransientError
from .logging_utils import get_logger
from .registry import PushResult
from .retry import call_with_retry
from .subprocess_utils import CommandFailed, CommandRunner, run_command
from .trigger import DOCKER_TAG_RE


logger = get_logger(__name__)

DEFAULT_REGISTRY_HOST = "docker.io"


@dataclass(frozen=True)
class ImageReference:
    namespace: str
    revision: str

    @property
    def tag(self) -> str:
        return f"{self.namespace}:{self.revision}"

    @property
    def url(self) -> str:
        """
        레지스트리 호스트까지 포함한 전체 경로.
        Cloud Run 은 docker.io 이미지를 호스트 없이 받지 않는다.
        """
        first = self.namespace.split("/", 1)[0]
        if "/" in self.namespace and ("." in first or ":" in first or first == "localhost"):
            return self.tag
        return f"{DEFAULT_REGISTRY_HOST}/{self.tag}"

    def __str__(self) -> str:
        return self.tag


def image_reference(namespace: str, revision: str) -> ImageReference:
    if not namespace:
        raise ValueError("이미지 namespace 가 비어 있습니다.")
    if not DOCKER_TAG_RE.match(revision or ""):
        raise ValueError(f"리비전을 docker 태그로 사용할 수 없습니다: {revision!r}")
    return ImageReference(namespace=namespace, revision=revision)


class Registry(Protocol):
    def push(self, image: str, session: Session) -> Optional[str]:
        ...


class ImageBuilder:
    def __init__(
        self,
        cfg: PipelineConfig,
        registry: Registry,
        *,
        runner: CommandRunner = run_command,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cfg = cfg
        self._registry = registry
        self._runner = runner
        self._sleep = sleep

    def reference(self, revision: str) -> ImageReference:
        return image_reference(self._cfg.image_namespace, revision)

    def build(self, revision: str) -> ImageReference:
        """docker build 를 수행하고 리비전에 대응하는 ImageReference 를 반환한다."""
        try:
            ref = self.reference(revision)
        except ValueError as e:
            raise BuildFailed(f"{self._cfg.image_namespace}:{revision}", str(e)) from e
        context_dir = self._cfg.source_dir
        dockerfile = os.path.join(context_dir, self._cfg.dockerfile)
        cmd = [
            "docker",
            "build",
            "-t",
            ref.tag,
            "-f",
            dockerfile,
            "--label",
            f"org.opencontainers.image.revision={revision}",
            context_dir,
        ]
        try:
            self._runner(cmd, timeout=self._cfg.build_timeout)
        except CommandFailed as e:
            raise BuildFailed(ref.tag, str(e)) from e

        logger.info("이미지 빌드 완료: %s", ref.tag)
        return ref

    def push(self, ref: ImageReference, session: Session) -> PushResult:
        """
        일시적 오류는 지수 백오프로 PUSH_RETRIES 회까지 재시도한다.
        인증 거부는 재시도하지 않는다.
        """
        attempts = 0

        def _once() -> Optional[str]:
            nonlocal attempts
            attempts += 1
            return self._registry.push(ref.tag, session)

        try:
            digest = call_with_retry(
                _once,
                attempts=self._cfg.push_retries,
                base_delay=self._cfg.retry_base_delay,
                description=f"push {ref.tag}",
                sleep=self._sleep,
            )
        except TransientError as e:
            raise RegistryPushFailed(ref.tag, f"재시도 {attempts}회 후에도 실패: {e}") from e
        except AuthenticationFailed as e:
            raise RegistryPushFailed(ref.tag, f"인증 거부: {e}") from e
        except CommandFailed as e:
            raise RegistryPushFailed(ref.tag, str(e)) from e

        logger.info("이미지 푸시 완료: %s (attempts=%d)", ref.tag, attempts)
        return PushResult(image=ref.tag, attempts=attempts, digest=digest)
