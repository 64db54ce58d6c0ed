"""
suite_runner
------------

애플리케이션 자체의 설치/테스트 명령을 실행한다.
결과는 통과 여부와 캡처된 출력뿐이며, 내용은 해석하지 않는다.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import List

from .config import PipelineConfig
from .logging_utils import get_logger
from .subprocess_utils import CommandFailed, CommandRunner, run_command


logger = get_logger(__name__)


@dataclass(frozen=True)
class SuiteOutcome:
    passed: bool
    output: str
    returncode: int | None = None


class SuiteRunner:
    def __init__(self, cfg: PipelineConfig, *, runner: CommandRunner = run_command) -> None:
        self._cfg = cfg
        self._runner = runner

    def commands(self) -> List[List[str]]:
        cmds: List[List[str]] = []
        for raw in (self._cfg.install_command, self._cfg.test_command):
            if raw and raw.strip():
                cmds.append(shlex.split(raw))
        return cmds

    def run(self) -> SuiteOutcome:
        outputs: List[str] = []
        for cmd in self.commands():
            try:
                result = self._runner(cmd, cwd=self._cfg.source_dir, timeout=self._cfg.test_timeout)
            except CommandFailed as e:
                # 타임아웃/명령 없음도 실패로 본다.
                logger.error("테스트 단계 명령 실패: %s", " ".join(cmd))
                outputs.append(e.output or str(e))
                return SuiteOutcome(passed=False, output="\n".join(outputs), returncode=e.returncode)
            outputs.append(result.output)
        return SuiteOutcome(passed=True, output="\n".join(o for o in outputs if o), returncode=0)
