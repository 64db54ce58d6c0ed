"""
environments
------------

트리거 정보로부터 배포 대상 환경(staging/production)을 결정한다.
결정 로직은 순수 함수이며, 실행 중 사람이 고르지 않는다.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import PipelineConfig
from .trigger import PipelineRun, TriggerKind


class Environment(str, Enum):
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass(frozen=True)
class EnvironmentTarget:
    environment: Environment
    region: str
    service_name: str
    traffic_tag: str

    def __str__(self) -> str:
        return f"{self.environment.value}:{self.service_name}@{self.region}"


def select_environment(
    trigger: TriggerKind,
    branch: str,
    release_target: Optional[str] = None,
    release_action: Optional[str] = None,
    *,
    main_branch: str = "main",
) -> Optional[Environment]:
    """
    - release + published + 대상 브랜치가 main  -> production
    - pull_request                             -> 배포 없음 (CI 전용)
    - 그 외, 현재 브랜치가 main 이 아니면       -> staging
    - 그 외 (main 에서의 push/수동 실행)        -> 배포 없음

    release 실행의 branch 는 태그 이름이며, release_target 으로 바꾸지 않는다.
    """
    if trigger is TriggerKind.PULL_REQUEST:
        return None

    if (
        trigger is TriggerKind.RELEASE
        and release_action == "published"
        and release_target == main_branch
    ):
        return Environment.PRODUCTION

    if branch and branch != main_branch:
        return Environment.STAGING
    return None


def select_for_run(run: PipelineRun, *, main_branch: str = "main") -> Optional[Environment]:
    return select_environment(
        run.trigger,
        run.branch,
        run.release_target,
        run.release_action,
        main_branch=main_branch,
    )


def resolve_target(environment: Environment, cfg: PipelineConfig) -> EnvironmentTarget:
    if environment is Environment.PRODUCTION:
        return EnvironmentTarget(
            environment=environment,
            region=cfg.region,
            service_name=cfg.production_service_name,
            traffic_tag=cfg.production_traffic_tag,
        )
    return EnvironmentTarget(
        environment=environment,
        region=cfg.region,
        service_name=cfg.staging_service_name,
        traffic_tag=cfg.staging_traffic_tag,
    )
