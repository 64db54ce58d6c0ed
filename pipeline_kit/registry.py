"""
registry
--------

컨테이너 레지스트리(Docker Hub 기본) 로그인/푸시를 docker CLI 로 수행한다.

로그인은 실행마다 별도의 DOCKER_CONFIG 디렉토리에 저장되고,
비밀번호는 --password-stdin 으로만 전달된다.
"""

from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass
from typing import Optional

from .credentials import REGISTRY, Session
from .errors import AuthenticationFailed, TransientError
from .logging_utils import get_logger
from .subprocess_utils import (
    CommandFailed,
    CommandNotFound,
    CommandRunner,
    CommandTimeout,
    output_contains,
    run_command,
)


logger = get_logger(__name__)


AUTH_REJECTED_MARKERS = (
    "unauthorized",
    "authentication required",
    "incorrect username or password",
    "denied: requested access",
    "access denied",
    "insufficient_scope",
)

TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "tls handshake",
    "i/o timeout",
    "unexpected eof",
    "temporary failure",
    "502 bad gateway",
    "503 service unavailable",
    "504 gateway",
    "too many requests",
    "toomanyrequests",
)


@dataclass(frozen=True)
class PushResult:
    image: str
    attempts: int
    digest: Optional[str] = None


def _digest_from_output(output: str) -> Optional[str]:
    # "latest: digest: sha256:abcd... size: 1234"
    for token in output.split():
        if token.startswith("sha256:"):
            return token
    return None


class DockerHubAuthenticator:
    provider = REGISTRY

    def __init__(self, user: str, host: Optional[str] = None, *, runner: CommandRunner = run_command) -> None:
        self._user = user
        self._host = host
        self._runner = runner

    def login(self, secret_material: str, *, timeout: float) -> Session:
        config_dir = tempfile.mkdtemp(prefix="pipeline-docker-")
        env = {"DOCKER_CONFIG": config_dir}
        cmd = ["docker", "login", "--username", self._user, "--password-stdin"]
        if self._host:
            cmd.append(self._host)
        try:
            self._runner(cmd, env=env, timeout=timeout, input=secret_material)
        except CommandFailed as e:
            shutil.rmtree(config_dir, ignore_errors=True)
            cause = "자격 증명이 거부되었습니다" if output_contains(e.output, AUTH_REJECTED_MARKERS) else type(e).__name__
            raise AuthenticationFailed(REGISTRY, cause) from e
        except BaseException:
            shutil.rmtree(config_dir, ignore_errors=True)
            raise

        logger.info("레지스트리 로그인: user=%s host=%s", self._user, self._host or "docker.io")
        return Session(provider=REGISTRY, handle=self._user, env=env, workdir=config_dir)

    def logout(self, session: Session, *, timeout: float) -> None:
        cmd = ["docker", "logout"]
        if self._host:
            cmd.append(self._host)
        self._runner(cmd, env=dict(session.env), timeout=timeout)


class DockerRegistry:
    """docker push 한 번을 수행하고, 실패를 일시적/인증/영구 오류로 분류한다."""

    def __init__(self, *, runner: CommandRunner = run_command, timeout: float = 900.0) -> None:
        self._runner = runner
        self._timeout = timeout

    def push(self, image: str, session: Session) -> Optional[str]:
        try:
            result = self._runner(["docker", "push", image], env=dict(session.env), timeout=self._timeout)
        except CommandTimeout as e:
            raise TransientError(f"docker push 타임아웃: {image}") from e
        except CommandNotFound:
            raise
        except CommandFailed as e:
            if output_contains(e.output, AUTH_REJECTED_MARKERS):
                raise AuthenticationFailed(REGISTRY, "푸시 권한이 거부되었습니다") from e
            if output_contains(e.output, TRANSIENT_MARKERS):
                raise TransientError(f"docker push 일시적 실패: {image}") from e
            raise
        return _digest_from_output(result.output)
