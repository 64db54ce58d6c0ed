from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv

from .errors import MissingConfiguration


ENV_FILES_DEFAULT_ORDER = [".env", ".env.pipeline", ".env.secrets"]

# 키 이름 -> 필수 여부
CONFIG_KEYS: Dict[str, bool] = {
    "IMAGE_NAMESPACE": True,
    "REGION": True,
    "PRODUCTION_SERVICE_NAME": True,
    "STAGING_SERVICE_NAME": True,
    "CLOUD_CREDENTIAL": True,
    "CLOUD_PROJECT_ID": True,
    "REGISTRY_USER": True,
    "REGISTRY_PASSWORD": True,
    "REGISTRY_HOST": False,
    "MAIN_BRANCH": False,
    "SOURCE_DIR": False,
    "DOCKERFILE": False,
    "INSTALL_COMMAND": False,
    "TEST_COMMAND": False,
    "PRODUCTION_TRAFFIC_TAG": False,
    "STAGING_TRAFFIC_TAG": False,
    "PUSH_RETRIES": False,
    "DEPLOY_RETRIES": False,
    "RETRY_BASE_DELAY": False,
    "AUTH_TIMEOUT": False,
    "PUSH_TIMEOUT": False,
    "DEPLOY_TIMEOUT": False,
    "BUILD_TIMEOUT": False,
    "TEST_TIMEOUT": False,
    "SECRET_SOURCE": False,
}

SECRET_KEYS = frozenset({"CLOUD_CREDENTIAL", "REGISTRY_PASSWORD"})

SECRET_SOURCES = ("env", "secret_manager")

# Cloud Run 트래픽 태그 규칙
_TRAFFIC_TAG_RE = re.compile(r"^[a-z][a-z0-9-]{0,45}$")


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def resolve_config(expected: Mapping[str, bool],
                   source: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
    """
    expected(키 -> 필수 여부) 기준으로 source 에서 값을 모은다.

    필수 키가 하나라도 비어 있으면 첫 번째가 아니라 누락된 키 전부를 담아
    MissingConfiguration 을 올린다. 빈 문자열도 누락으로 본다.
    오류 메시지에는 키 이름만 들어가고 값은 들어가지 않는다.
    """
    missing: List[str] = []
    resolved: Dict[str, Optional[str]] = {}
    for name, required in expected.items():
        val = source.get(name)
        if not val:
            if required:
                missing.append(name)
            resolved[name] = None
            continue
        resolved[name] = val

    if missing:
        raise MissingConfiguration(missing)
    return resolved


def _get_int(values: Mapping[str, Optional[str]], name: str, default: int) -> int:
    raw = values.get(name)
    if not raw:
        return default
    try:
        val = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} 는 정수여야 합니다: {raw!r}") from e
    if val < 1:
        raise ValueError(f"{name} 는 1 이상이어야 합니다: {val}")
    return val


def _get_float(values: Mapping[str, Optional[str]], name: str, default: float) -> float:
    raw = values.get(name)
    if not raw:
        return default
    try:
        val = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} 는 숫자여야 합니다: {raw!r}") from e
    if val < 0:
        raise ValueError(f"{name} 는 0 이상이어야 합니다: {val}")
    return val


def validate_traffic_tag(name: str, tag: str) -> str:
    if not _TRAFFIC_TAG_RE.match(tag):
        raise ValueError(
            f"{name} 값이 Cloud Run 트래픽 태그 규칙(소문자로 시작, 소문자/숫자/하이픈)에 맞지 않습니다: {tag!r}"
        )
    return tag


@dataclass(frozen=True)
class PipelineConfig:
    # 필수
    image_namespace: str
    region: str
    production_service_name: str
    staging_service_name: str
    cloud_project_id: str
    registry_user: str
    cloud_credential: str = field(repr=False)
    registry_password: str = field(repr=False)

    registry_host: Optional[str] = None
    main_branch: str = "main"

    # 애플리케이션 빌드/테스트
    source_dir: str = "."
    dockerfile: str = "Dockerfile"
    install_command: str = "npm ci"
    test_command: str = "npm test"

    production_traffic_tag: str = "production"
    staging_traffic_tag: str = "staging"

    # 재시도/타임아웃 (초)
    push_retries: int = 3
    deploy_retries: int = 3
    retry_base_delay: float = 2.0
    auth_timeout: float = 120.0
    push_timeout: float = 900.0
    deploy_timeout: float = 600.0
    build_timeout: float = 1800.0
    test_timeout: float = 1800.0

    secret_source: str = "env"

    @classmethod
    def from_mapping(cls, source: Mapping[str, Optional[str]]) -> "PipelineConfig":
        values = resolve_config(CONFIG_KEYS, source)

        secret_source = (values.get("SECRET_SOURCE") or "env").lower()
        if secret_source not in SECRET_SOURCES:
            raise ValueError(
                f"알 수 없는 SECRET_SOURCE 값입니다: {secret_source!r} ({' | '.join(SECRET_SOURCES)} 중 하나)"
            )

        production_tag = validate_traffic_tag(
            "PRODUCTION_TRAFFIC_TAG", values.get("PRODUCTION_TRAFFIC_TAG") or "production"
        )
        staging_tag = validate_traffic_tag(
            "STAGING_TRAFFIC_TAG", values.get("STAGING_TRAFFIC_TAG") or "staging"
        )
        if production_tag == staging_tag:
            raise ValueError("PRODUCTION_TRAFFIC_TAG 와 STAGING_TRAFFIC_TAG 는 서로 달라야 합니다.")

        return cls(
            image_namespace=values["IMAGE_NAMESPACE"] or "",
            region=values["REGION"] or "",
            production_service_name=values["PRODUCTION_SERVICE_NAME"] or "",
            staging_service_name=values["STAGING_SERVICE_NAME"] or "",
            cloud_project_id=values["CLOUD_PROJECT_ID"] or "",
            registry_user=values["REGISTRY_USER"] or "",
            cloud_credential=values["CLOUD_CREDENTIAL"] or "",
            registry_password=values["REGISTRY_PASSWORD"] or "",
            registry_host=values.get("REGISTRY_HOST"),
            main_branch=values.get("MAIN_BRANCH") or "main",
            source_dir=values.get("SOURCE_DIR") or ".",
            dockerfile=values.get("DOCKERFILE") or "Dockerfile",
            install_command=values.get("INSTALL_COMMAND") or "npm ci",
            test_command=values.get("TEST_COMMAND") or "npm test",
            production_traffic_tag=production_tag,
            staging_traffic_tag=staging_tag,
            push_retries=_get_int(values, "PUSH_RETRIES", 3),
            deploy_retries=_get_int(values, "DEPLOY_RETRIES", 3),
            retry_base_delay=_get_float(values, "RETRY_BASE_DELAY", 2.0),
            auth_timeout=_get_float(values, "AUTH_TIMEOUT", 120.0),
            push_timeout=_get_float(values, "PUSH_TIMEOUT", 900.0),
            deploy_timeout=_get_float(values, "DEPLOY_TIMEOUT", 600.0),
            build_timeout=_get_float(values, "BUILD_TIMEOUT", 1800.0),
            test_timeout=_get_float(values, "TEST_TIMEOUT", 1800.0),
            secret_source=secret_source,
        )

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls.from_mapping(os.environ)

    def summary_lines(self) -> List[str]:
        """시크릿 필드는 값 대신 설정 여부만 보여준다."""
        lines: List[str] = []
        for f in fields(self):
            val = getattr(self, f.name)
            if f.name.upper() in SECRET_KEYS:
                val = "(set)" if val else "(not set)"
            elif val is None:
                val = "(not set)"
            lines.append(f"- {f.name}: {val}")
        return lines
