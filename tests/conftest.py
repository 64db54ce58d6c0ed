"""
pytest 설정:

로컬에 설치된 다른 버전의 pipeline_kit 보다 현재 레포 소스를 먼저 import 하도록
repo root 를 sys.path 최상단에 고정하고, 공통 fixture 를 제공한다.
"""

from __future__ import annotations

import os
import sys
from typing import Callable, Dict, List, Optional, Sequence

import pytest


_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)


from pipeline_kit.config import PipelineConfig  # noqa: E402
from pipeline_kit.subprocess_utils import RunResult  # noqa: E402


def base_env() -> Dict[str, str]:
    return {
        "IMAGE_NAMESPACE": "acme/shop-api",
        "REGION": "asia-northeast3",
        "PRODUCTION_SERVICE_NAME": "shop-api",
        "STAGING_SERVICE_NAME": "shop-api-staging",
        "CLOUD_CREDENTIAL": '{"type": "service_account", "client_email": "deployer@acme.iam.gserviceaccount.com"}',
        "CLOUD_PROJECT_ID": "acme-prod",
        "REGISTRY_USER": "acme",
        "REGISTRY_PASSWORD": "dckr_pat_s3cr3t-value",
    }


@pytest.fixture
def env() -> Dict[str, str]:
    return base_env()


@pytest.fixture
def cfg(env: Dict[str, str]) -> PipelineConfig:
    env = dict(env)
    env["RETRY_BASE_DELAY"] = "0.5"
    return PipelineConfig.from_mapping(env)


class FakeRunner:
    """
    run_command 대역. 호출된 명령을 기록하고,
    handler 가 있으면 그 결과(RunResult 또는 예외)를 사용한다.
    """

    def __init__(self, handler: Optional[Callable[[List[str]], Optional[RunResult]]] = None) -> None:
        self.calls: List[List[str]] = []
        self.kwargs: List[dict] = []
        self._handler = handler

    def __call__(self, cmd: Sequence[str], **kwargs) -> RunResult:  # noqa: ANN003
        cmd = list(cmd)
        self.calls.append(cmd)
        self.kwargs.append(kwargs)
        if self._handler is not None:
            result = self._handler(cmd)
            if result is not None:
                return result
        return RunResult(returncode=0, stdout="", stderr="")


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_runner() -> Callable[..., FakeRunner]:
    return FakeRunner
