"""
errors
------

파이프라인 실행 중 발생하는 오류 분류.

모든 오류는 해당 PipelineRun 에 대해 치명적이며, 메시지에 시크릿 값을 담지 않는다.
"""

from __future__ import annotations

from typing import Iterable, List, Optional


class PipelineError(Exception):
    """파이프라인 오류의 공통 베이스."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class MissingConfiguration(PipelineError, ValueError):
    def __init__(self, names: Iterable[str]) -> None:
        self.names: List[str] = sorted(set(names))
        super().__init__("필수 설정값이 누락되었습니다: " + ", ".join(self.names))


class TestsFailed(PipelineError):
    __test__ = False  # pytest 수집 대상 아님

    def __init__(self, output: str = "", returncode: Optional[int] = None) -> None:
        self.output = output
        self.returncode = returncode
        detail = f" (exit={returncode})" if returncode is not None else ""
        super().__init__(f"테스트가 실패했습니다{detail}")


class BuildFailed(PipelineError):
    def __init__(self, image: str, cause: str) -> None:
        self.image = image
        self.cause = cause
        super().__init__(f"이미지 빌드 실패: {image}: {cause}")


class RegistryPushFailed(PipelineError):
    def __init__(self, image: str, cause: str) -> None:
        self.image = image
        self.cause = cause
        super().__init__(f"레지스트리 푸시 실패: {image}: {cause}")


class AuthenticationFailed(PipelineError):
    def __init__(self, provider: str, cause: str = "") -> None:
        self.provider = provider
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"인증 실패 (provider={provider}){detail}")


class DeploymentRejected(PipelineError):
    def __init__(self, target: str, cause: str) -> None:
        self.target = target
        self.cause = cause
        super().__init__(f"배포 거부됨 ({target}): {cause}")


class PipelineCancelled(PipelineError):
    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"파이프라인이 취소되었습니다 (다음 단계: {stage})")


class TransientError(PipelineError):
    """재시도 가능한 일시적 오류. 재시도를 소진하면 단계별 오류로 변환된다."""
