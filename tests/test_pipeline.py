from typing import List, Optional

import pytest

from pipeline_kit.credentials import CLOUD, REGISTRY, CredentialBroker, Session
from pipeline_kit.dispatcher import DeploymentDispatcher
from pipeline_kit.environments import Environment
from pipeline_kit.errors import AuthenticationFailed, BuildFailed, DeploymentRejected, TransientError
from pipeline_kit.image_builder import ImageBuilder
from pipeline_kit.pipeline import Pipeline, PipelineState, can_transition, plan_run
from pipeline_kit.suite_runner import SuiteOutcome
from pipeline_kit.trigger import PipelineRun, TriggerKind


class FakeSuite:
    def __init__(self, passed: bool = True) -> None:
        self.passed = passed
        self.calls = 0

    def run(self) -> SuiteOutcome:
        self.calls += 1
        return SuiteOutcome(passed=self.passed, output="1 failing" if not self.passed else "ok", returncode=0 if self.passed else 1)


class FakeBuilder(ImageBuilder):
    def __init__(self, cfg, *, fail_build: bool = False, push_error: Optional[BaseException] = None) -> None:  # noqa: ANN001
        super().__init__(cfg, registry=None)  # type: ignore[arg-type]
        self.fail_build = fail_build
        self.push_error = push_error
        self.built: List[str] = []
        self.pushed: List[str] = []

    def build(self, revision: str):  # noqa: ANN201
        self.built.append(revision)
        if self.fail_build:
            raise BuildFailed(self.reference(revision).tag, "exit=1")
        return self.reference(revision)

    def push(self, ref, session):  # noqa: ANN001, ANN201
        from pipeline_kit.registry import PushResult

        self.pushed.append(ref.tag)
        if self.push_error is not None:
            raise self.push_error
        return PushResult(image=ref.tag, attempts=1, digest="sha256:abc")


class FakeAuthenticator:
    def __init__(self, provider: str, reject: bool = False) -> None:
        self.provider = provider
        self.reject = reject
        self.released = 0

    def login(self, secret_material: str, *, timeout: float) -> Session:
        if self.reject:
            raise AuthenticationFailed(self.provider, "rejected")
        return Session(provider=self.provider, handle="h")

    def logout(self, session: Session, *, timeout: float) -> None:
        self.released += 1


class SecretStore:
    def read(self, provider: str) -> str:
        return f"{provider}-material"


class FakePlatform:
    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.error = error
        self.calls: List[tuple] = []

    def deploy(self, service_name, region, image_url, traffic_tag, session=None):  # noqa: ANN001, ANN201
        self.calls.append((service_name, image_url, traffic_tag))
        if self.error is not None:
            raise self.error
        return f"https://{service_name}.a.run.app"


class Harness:
    def __init__(self, cfg, **kw) -> None:  # noqa: ANN001, ANN003
        self.cfg = cfg
        self.suite = FakeSuite(kw.get("tests_pass", True))
        self.builder = FakeBuilder(cfg, fail_build=kw.get("fail_build", False), push_error=kw.get("push_error"))
        self.registry_auth = FakeAuthenticator(REGISTRY, reject=kw.get("reject_registry", False))
        self.cloud_auth = FakeAuthenticator(CLOUD)
        self.platform = FakePlatform(kw.get("deploy_error"))

    def pipeline(self, run: PipelineRun) -> Pipeline:
        broker = CredentialBroker({REGISTRY: self.registry_auth, CLOUD: self.cloud_auth}, secret_store=SecretStore())
        dispatcher = DeploymentDispatcher(self.platform, attempts=1, sleep=lambda _s: None)
        return Pipeline(
            self.cfg,
            run,
            suite=self.suite,  # type: ignore[arg-type]
            builder=self.builder,
            broker=broker,
            dispatcher=dispatcher,
        )


def _push(branch: str = "feature/cart") -> PipelineRun:
    return PipelineRun(trigger=TriggerKind.PUSH, branch=branch, revision="3f2a9c1")


def _release(target: str = "main", action: str = "published") -> PipelineRun:
    return PipelineRun(
        trigger=TriggerKind.RELEASE,
        branch="v1.0.0",
        revision="3f2a9c1",
        release_target=target,
        release_action=action,
    )


def test_push_to_feature_branch_deploys_staging(cfg) -> None:
    h = Harness(cfg)

    result = h.pipeline(_push()).execute()

    assert result.succeeded
    assert result.history == [
        PipelineState.PENDING,
        PipelineState.TESTING,
        PipelineState.BUILDING,
        PipelineState.PUSHING,
        PipelineState.DECIDING,
        PipelineState.DEPLOYING,
        PipelineState.SUCCEEDED,
    ]
    assert result.deployment is not None
    assert result.deployment.target.environment is Environment.STAGING
    assert h.platform.calls == [("shop-api-staging", "docker.io/acme/shop-api:3f2a9c1", "staging")]
    assert h.registry_auth.released == 1
    assert h.cloud_auth.released == 1


def test_published_release_on_main_deploys_production(cfg) -> None:
    h = Harness(cfg)

    result = h.pipeline(_release()).execute()

    assert result.succeeded
    assert result.deployment.target.environment is Environment.PRODUCTION
    assert h.platform.calls == [("shop-api", "docker.io/acme/shop-api:3f2a9c1", "production")]


def test_push_to_main_succeeds_without_deploying(cfg) -> None:
    h = Harness(cfg)

    result = h.pipeline(_push("main")).execute()

    assert result.succeeded
    assert PipelineState.DEPLOYING not in result.history
    assert result.deployment is None
    assert h.builder.pushed == ["acme/shop-api:3f2a9c1"]
    assert h.platform.calls == []
    # 배포가 없으면 cloud 인증도 하지 않는다
    assert h.cloud_auth.released == 0


def test_pull_request_runs_tests_only(cfg) -> None:
    h = Harness(cfg)
    run = PipelineRun(trigger=TriggerKind.PULL_REQUEST, branch="feature/cart", revision="3f2a9c1")

    result = h.pipeline(run).execute()

    assert result.succeeded
    assert result.history == [PipelineState.PENDING, PipelineState.TESTING, PipelineState.SUCCEEDED]
    assert h.builder.built == []
    assert h.platform.calls == []


def test_failed_tests_stop_every_later_stage(cfg) -> None:
    h = Harness(cfg, tests_pass=False)

    result = h.pipeline(_release()).execute()

    assert result.state is PipelineState.FAILED
    assert result.failed_stage is PipelineState.TESTING
    assert result.error_kind == "TestsFailed"
    assert h.builder.built == []
    assert h.builder.pushed == []
    assert h.platform.calls == []


def test_build_failure_stops_before_push(cfg) -> None:
    h = Harness(cfg, fail_build=True)

    result = h.pipeline(_push()).execute()

    assert result.failed_stage is PipelineState.BUILDING
    assert result.error_kind == "BuildFailed"
    assert h.builder.pushed == []


def test_registry_login_rejection_fails_pushing(cfg) -> None:
    h = Harness(cfg, reject_registry=True)

    result = h.pipeline(_push()).execute()

    assert result.failed_stage is PipelineState.PUSHING
    assert result.error_kind == "AuthenticationFailed"
    assert h.builder.pushed == []


def test_sessions_released_when_deploy_fails(cfg) -> None:
    h = Harness(cfg, deploy_error=TransientError("unavailable"))

    result = h.pipeline(_release()).execute()

    assert result.failed_stage is PipelineState.DEPLOYING
    assert isinstance(result.error, DeploymentRejected)
    # 이미 푸시한 이미지는 되돌리지 않는다
    assert h.builder.pushed == ["acme/shop-api:3f2a9c1"]
    assert h.registry_auth.released == 1
    assert h.cloud_auth.released == 1


def test_cancel_between_stages(cfg) -> None:
    h = Harness(cfg)
    pipeline = h.pipeline(_push())

    original_push = h.builder.push

    def push_then_cancel(ref, session):  # noqa: ANN001, ANN202
        result = original_push(ref, session)
        pipeline.cancel()
        return result

    h.builder.push = push_then_cancel  # type: ignore[method-assign]

    result = pipeline.execute()

    assert result.state is PipelineState.FAILED
    assert result.failed_stage is PipelineState.DECIDING
    assert result.error_kind == "PipelineCancelled"
    assert h.builder.pushed == ["acme/shop-api:3f2a9c1"]
    assert h.platform.calls == []
    assert h.registry_auth.released == 1


def test_pipeline_cannot_be_executed_twice(cfg) -> None:
    pipeline = Harness(cfg).pipeline(_push("main"))
    pipeline.execute()

    with pytest.raises(RuntimeError):
        pipeline.execute()


def test_unexpected_error_propagates_after_cleanup(cfg) -> None:
    h = Harness(cfg, push_error=KeyError("boom"))
    pipeline = h.pipeline(_push())

    with pytest.raises(KeyError):
        pipeline.execute()

    assert pipeline.state is PipelineState.FAILED
    assert h.registry_auth.released == 1


def test_transitions_are_one_way() -> None:
    assert can_transition(PipelineState.TESTING, PipelineState.BUILDING)
    assert not can_transition(PipelineState.BUILDING, PipelineState.TESTING)
    assert not can_transition(PipelineState.PENDING, PipelineState.DEPLOYING)
    assert can_transition(PipelineState.DEPLOYING, PipelineState.FAILED)
    assert not can_transition(PipelineState.SUCCEEDED, PipelineState.FAILED)
    assert not can_transition(PipelineState.FAILED, PipelineState.TESTING)


def test_summary_reports_stage_and_error_without_secrets(cfg) -> None:
    h = Harness(cfg, deploy_error=TransientError("unavailable"))

    summary = h.pipeline(_release()).execute().summary()

    assert "- stage: deploying" in summary
    assert "- error: DeploymentRejected" in summary
    assert cfg.registry_password not in summary
    assert "cloud-material" not in summary


def test_plan_run_shows_selected_target(cfg) -> None:
    text = plan_run(cfg, _release())

    assert "deploying: ENABLED -> production:shop-api@asia-northeast3" in text
    assert "docker.io/acme/shop-api:3f2a9c1" in text
    assert cfg.registry_password not in text


def test_cancel_while_stage_is_running_lets_stage_finish(cfg) -> None:
    h = Harness(cfg)
    pipeline = h.pipeline(_push())

    class CancellingSuite(FakeSuite):
        def run(self) -> SuiteOutcome:
            pipeline.cancel()
            return super().run()

    pipeline._suite = CancellingSuite()  # type: ignore[assignment]

    result = pipeline.execute()

    assert result.history == [PipelineState.PENDING, PipelineState.TESTING, PipelineState.FAILED]
    assert result.failed_stage is PipelineState.BUILDING
    assert result.error_kind == "PipelineCancelled"
    assert pipeline._suite.calls == 1
    assert h.builder.built == []


def test_unpublished_release_off_main_deploys_staging(cfg) -> None:
    h = Harness(cfg)

    result = h.pipeline(_release(action="created")).execute()

    assert result.succeeded
    assert result.deployment is not None
    assert result.deployment.target.environment is Environment.STAGING
    assert h.platform.calls == [("shop-api-staging", "docker.io/acme/shop-api:3f2a9c1", "staging")]
