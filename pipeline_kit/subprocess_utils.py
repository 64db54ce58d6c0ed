from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from textwrap import shorten
from typing import Callable, Mapping, Optional, Sequence

from .logging_utils import get_logger, mask_secrets


logger = get_logger(__name__)


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class CommandFailed(RuntimeError):
    """
    외부 명령 실패.

    output 에는 stdout/stderr 가 합쳐져 들어가며,
    호출 측은 이 내용을 보고 일시적 오류/인증 거부 등을 구분한다.
    """

    def __init__(self, message: str, *, returncode: Optional[int] = None, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class CommandTimeout(CommandFailed):
    pass


class CommandNotFound(CommandFailed):
    pass


# 테스트에서 가짜 러너로 교체할 수 있도록 시그니처를 타입으로 노출
CommandRunner = Callable[..., RunResult]


def merged_env(extra: Optional[Mapping[str, str]]) -> Optional[dict[str, str]]:
    """현재 프로세스 환경 위에 extra 를 덮어쓴 dict. extra 가 없으면 None (상속)."""
    if not extra:
        return None
    env = dict(os.environ)
    env.update(extra)
    return env


def run_command(
    cmd: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = 900.0,
    input: str | None = None,  # noqa: A002
) -> RunResult:
    """
    subprocess 실행 공통 유틸.

    - stdout/stderr 를 캡처하고, 실패 시 요약을 CommandFailed 에 포함
    - timeout 초과 시 CommandTimeout (멈춘 채로 기다리지 않는다)
    - input 은 stdin 으로만 전달되며 로그에 남지 않는다 (비밀번호 등)
    """
    display = " ".join(cmd)
    logger.info("명령 실행: %s", display)

    try:
        result = subprocess.run(  # noqa: S603
            list(cmd),
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=merged_env(env),
            input=input,
            # 터미널 Ctrl-C (프로세스 그룹 SIGINT) 가 진행 중인 단계를 죽이지 않도록 별도 세션
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise CommandNotFound(
            f"필요한 명령을 찾을 수 없습니다: {cmd[0]} (docker/gcloud/npm 이 설치되어 있는지 확인하세요)"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise CommandTimeout(
            f"명령 실행이 {timeout}초 안에 끝나지 않았습니다: {display}",
            output=_decode(e.stdout) + _decode(e.stderr),
        ) from e
    except subprocess.CalledProcessError as e:
        stdout = (e.stdout or "").strip()
        stderr = (e.stderr or "").strip()
        detail = ""
        if stderr:
            detail = "\nstderr:\n" + shorten(mask_secrets(stderr), width=2000)
        elif stdout:
            detail = "\nstdout:\n" + shorten(mask_secrets(stdout), width=2000)
        raise CommandFailed(
            f"명령 실행 실패: {display} (exit={e.returncode}){detail}",
            returncode=e.returncode,
            output="\n".join(p for p in (stdout, stderr) if p),
        ) from e

    if result.stdout:
        logger.debug("명령 stdout: %s", shorten(result.stdout.strip(), width=2000))
    if result.stderr:
        logger.debug("명령 stderr: %s", shorten(result.stderr.strip(), width=2000))
    return RunResult(returncode=result.returncode, stdout=result.stdout or "", stderr=result.stderr or "")


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def output_contains(output: str, markers: Sequence[str]) -> bool:
    """
    markers 중 하나가 단어 단위로 output 에 있는지 (대소문자 무시).
    "thereof" 는 "eof" 로, "rev-00503" 은 "503" 으로 보지 않는다.
    """
    lowered = output.lower()
    return any(re.search(rf"(?<![a-z0-9]){re.escape(m)}(?![a-z0-9])", lowered) for m in markers)
