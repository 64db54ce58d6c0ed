"""
pipeline
--------

Testing -> Building -> Pushing -> Deciding -> Deploying -> Succeeded 순서로
하나의 PipelineRun 을 실행하는 상태 머신.

- 앞 단계가 성공해야 다음 단계로 넘어간다.
- 어느 단계든 실패하면 즉시 Failed(stage, cause) 로 끝난다. 이미 푸시한 이미지는 되돌리지 않는다.
- 상태 머신 수준에서는 재시도하지 않는다 (재시도는 push/deploy 내부에서만).
- 인증 세션은 실행이 어떻게 끝나든 해제된다.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from .config import PipelineConfig
from .credentials import CLOUD, REGISTRY, CredentialBroker
from .dispatcher import DeploymentDispatcher, DeployResult
from .environments import EnvironmentTarget, resolve_target, select_for_run
from .errors import PipelineCancelled, PipelineError, TestsFailed
from .image_builder import ImageBuilder, ImageReference, image_reference
from .logging_utils import get_logger, mask_secrets
from .registry import PushResult
from .suite_runner import SuiteRunner
from .trigger import PipelineRun


logger = get_logger(__name__)


class PipelineState(str, Enum):
    PENDING = "pending"
    TESTING = "testing"
    BUILDING = "building"
    PUSHING = "pushing"
    DECIDING = "deciding"
    DEPLOYING = "deploying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES: FrozenSet[PipelineState] = frozenset({PipelineState.SUCCEEDED, PipelineState.FAILED})

_TRANSITIONS: Dict[PipelineState, FrozenSet[PipelineState]] = {
    PipelineState.PENDING: frozenset({PipelineState.TESTING}),
    # pull_request 는 테스트 후 바로 종료
    PipelineState.TESTING: frozenset({PipelineState.BUILDING, PipelineState.SUCCEEDED}),
    PipelineState.BUILDING: frozenset({PipelineState.PUSHING}),
    PipelineState.PUSHING: frozenset({PipelineState.DECIDING}),
    # 배포 대상이 없으면 그대로 성공 종료
    PipelineState.DECIDING: frozenset({PipelineState.DEPLOYING, PipelineState.SUCCEEDED}),
    PipelineState.DEPLOYING: frozenset({PipelineState.SUCCEEDED}),
    PipelineState.SUCCEEDED: frozenset(),
    PipelineState.FAILED: frozenset(),
}


def can_transition(current: PipelineState, nxt: PipelineState) -> bool:
    if nxt is PipelineState.FAILED:
        return current not in TERMINAL_STATES
    return nxt in _TRANSITIONS[current]


@dataclass
class PipelineResult:
    run: PipelineRun
    state: PipelineState
    history: List[PipelineState] = field(default_factory=list)
    image: Optional[ImageReference] = None
    push: Optional[PushResult] = None
    target: Optional[EnvironmentTarget] = None
    deployment: Optional[DeployResult] = None
    failed_stage: Optional[PipelineState] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.SUCCEEDED

    @property
    def error_kind(self) -> Optional[str]:
        if self.error is None:
            return None
        return type(self.error).__name__

    def summary(self) -> str:
        lines: List[str] = []
        lines.append("# Pipeline summary")
        lines.append(f"- run: {self.run.run_id}")
        lines.append(f"- {self.run.describe()}")
        lines.append(f"- state: {self.state.value}")
        lines.append("")

        lines.append("## Stages")
        lines.append("- " + " -> ".join(s.value for s in self.history))
        lines.append("")

        lines.append("## Image")
        if self.image is not None:
            lines.append(f"- tag: {self.image.tag}")
            if self.push is not None:
                lines.append(f"- pushed: yes (attempts={self.push.attempts})")
                if self.push.digest:
                    lines.append(f"- digest: {self.push.digest}")
        else:
            lines.append("- (none)")
        lines.append("")

        lines.append("## Deployment")
        if self.deployment is not None:
            lines.append(f"- environment: {self.deployment.target.environment.value}")
            lines.append(f"- service: {self.deployment.target.service_name} ({self.deployment.target.region})")
            lines.append(f"- traffic tag: {self.deployment.traffic_tag}")
            if self.deployment.url:
                lines.append(f"- url: {self.deployment.url}")
        elif self.target is not None:
            lines.append(f"- target: {self.target} (미완료)")
        else:
            lines.append("- (none)")

        if self.state is PipelineState.FAILED:
            lines.append("")
            lines.append("## Failure")
            stage = self.failed_stage.value if self.failed_stage else "(unknown)"
            lines.append(f"- stage: {stage}")
            lines.append(f"- error: {self.error_kind}")
            if self.error is not None:
                lines.append(f"- detail: {self.error}")

        return mask_secrets("\n".join(lines))


class Pipeline:
    """
    하나의 PipelineRun 전용 실행기. 실행마다 새 인스턴스를 만든다
    (브로커/디스패처를 다른 실행과 공유하지 않는다).
    """

    def __init__(
        self,
        cfg: PipelineConfig,
        run: PipelineRun,
        *,
        suite: SuiteRunner,
        builder: ImageBuilder,
        broker: CredentialBroker,
        dispatcher: DeploymentDispatcher,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.cfg = cfg
        self.run = run
        self._suite = suite
        self._builder = builder
        self._broker = broker
        self._dispatcher = dispatcher
        self._cancel = cancel_event or threading.Event()

        self._state = PipelineState.PENDING
        self._result = PipelineResult(run=run, state=self._state, history=[self._state])

    @classmethod
    def for_run(
        cls,
        cfg: PipelineConfig,
        run: PipelineRun,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> "Pipeline":
        """실제 docker/gcloud 협력자를 연결한 파이프라인."""
        from .gcp_auth import GcloudAuthenticator
        from .gcp_cloud_run import CloudRunPlatform
        from .gcp_secrets import secret_store_for
        from .registry import DockerHubAuthenticator, DockerRegistry

        broker = CredentialBroker(
            {
                REGISTRY: DockerHubAuthenticator(cfg.registry_user, cfg.registry_host),
                CLOUD: GcloudAuthenticator(cfg.cloud_project_id),
            },
            secret_store=secret_store_for(cfg),
            timeout=cfg.auth_timeout,
        )
        builder = ImageBuilder(cfg, DockerRegistry(timeout=cfg.push_timeout))
        dispatcher = DeploymentDispatcher(
            CloudRunPlatform(cfg.cloud_project_id, timeout=cfg.deploy_timeout),
            attempts=cfg.deploy_retries,
            base_delay=cfg.retry_base_delay,
        )
        return cls(
            cfg,
            run,
            suite=SuiteRunner(cfg),
            builder=builder,
            broker=broker,
            dispatcher=dispatcher,
            cancel_event=cancel_event,
        )

    @property
    def state(self) -> PipelineState:
        return self._state

    def cancel(self) -> None:
        """다음 단계로 넘어가기 전에 실행을 멈춘다. 진행 중인 단계는 끝까지 수행된다."""
        logger.warning("파이프라인 취소 요청: run=%s", self.run.run_id)
        self._cancel.set()

    def _enter(self, nxt: PipelineState) -> None:
        if nxt not in TERMINAL_STATES and self._cancel.is_set():
            raise PipelineCancelled(nxt.value)
        if not can_transition(self._state, nxt):
            raise RuntimeError(f"허용되지 않는 상태 전이: {self._state.value} -> {nxt.value}")
        logger.info("상태 전이: %s -> %s (run=%s)", self._state.value, nxt.value, self.run.run_id)
        self._state = nxt
        self._result.state = nxt
        self._result.history.append(nxt)

    def _fail(self, error: BaseException) -> None:
        if isinstance(error, PipelineCancelled):
            stage = PipelineState(error.stage)
        else:
            stage = self._state
        logger.error(
            "파이프라인 실패: stage=%s error=%s (run=%s)",
            stage.value,
            type(error).__name__,
            self.run.run_id,
        )
        self._result.failed_stage = stage
        self._result.error = error
        self._enter(PipelineState.FAILED)

    def execute(self) -> PipelineResult:
        if self._state is not PipelineState.PENDING:
            raise RuntimeError("이미 실행된 파이프라인입니다. 실행마다 새 Pipeline 을 만드세요.")

        logger.info("파이프라인 시작: run=%s %s", self.run.run_id, self.run.describe())
        with self._broker.scope():
            try:
                self._run_stages()
            except PipelineError as e:
                self._fail(e)
            except Exception as e:
                self._fail(e)
                raise
        return self._result

    def _run_stages(self) -> None:
        self._enter(PipelineState.TESTING)
        outcome = self._suite.run()
        if not outcome.passed:
            raise TestsFailed(outcome.output, outcome.returncode)

        if self.run.ci_only:
            logger.info("pull_request 실행은 테스트만 수행합니다.")
            self._enter(PipelineState.SUCCEEDED)
            return

        self._enter(PipelineState.BUILDING)
        image = self._builder.build(self.run.revision)
        self._result.image = image

        self._enter(PipelineState.PUSHING)
        registry_session = self._broker.acquire(REGISTRY)
        self._result.push = self._builder.push(image, registry_session)

        self._enter(PipelineState.DECIDING)
        environment = select_for_run(self.run, main_branch=self.cfg.main_branch)
        if environment is None:
            logger.info("배포 조건에 해당하지 않아 배포 없이 종료합니다: %s", self.run.describe())
            self._enter(PipelineState.SUCCEEDED)
            return
        target = resolve_target(environment, self.cfg)
        self._result.target = target

        self._enter(PipelineState.DEPLOYING)
        cloud_session = self._broker.acquire(CLOUD)
        self._result.deployment = self._dispatcher.deploy(target, image, session=cloud_session)

        self._enter(PipelineState.SUCCEEDED)


def plan_run(cfg: PipelineConfig, run: PipelineRun) -> str:
    """
    설정 요약과 이 트리거가 어떤 단계/환경으로 이어지는지 텍스트로 돌려준다.
    외부 호출은 하지 않는다.
    """
    lines: List[str] = []
    lines.append("# Pipeline plan")
    lines.append(f"- {run.describe()}")
    lines.append("")

    lines.append("## Config summary")
    lines.extend(cfg.summary_lines())
    lines.append("")

    lines.append("## Stages")
    if run.ci_only:
        lines.append("- testing: ENABLED")
        lines.append("- building/pushing/deploying: SKIPPED (pull_request 는 CI 전용)")
        return "\n".join(lines)

    lines.append("- testing: ENABLED")
    lines.append("- building: ENABLED")
    lines.append("- pushing: ENABLED")

    environment = select_for_run(run, main_branch=cfg.main_branch)
    if environment is None:
        lines.append("- deploying: SKIPPED (배포 조건에 해당하지 않음)")
    else:
        target = resolve_target(environment, cfg)
        lines.append(f"- deploying: ENABLED -> {target} (tag={target.traffic_tag})")

    lines.append("")
    lines.append("## Image")
    try:
        lines.append(f"- {image_reference(cfg.image_namespace, run.revision).url}")
    except ValueError as e:
        lines.append(f"- (태그 생성 불가: {e})")

    return "\n".join(lines)
