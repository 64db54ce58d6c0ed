"""
gcp_secrets
-----------

Credential Broker 에 시크릿을 공급하는 저장소.

- env: 해석된 설정값(CLOUD_CREDENTIAL / REGISTRY_PASSWORD)을 그대로 사용
- secret_manager: 설정값을 Secret Manager 의 secret id 로 보고 최신 버전을 읽는다
"""

from __future__ import annotations

from typing import Dict, Optional

from google.api_core.exceptions import GoogleAPICallError, NotFound
from google.cloud import secretmanager

from .config import PipelineConfig
from .credentials import CLOUD, REGISTRY
from .errors import AuthenticationFailed
from .logging_utils import get_logger


logger = get_logger(__name__)


def _provider_refs(cfg: PipelineConfig) -> Dict[str, str]:
    return {
        CLOUD: cfg.cloud_credential,
        REGISTRY: cfg.registry_password,
    }


class ConfigSecretStore:
    def __init__(self, cfg: PipelineConfig) -> None:
        self._values = _provider_refs(cfg)

    def read(self, provider: str) -> str:
        try:
            return self._values[provider]
        except KeyError:
            raise ValueError(f"시크릿이 정의되지 않은 provider 입니다: {provider}") from None


class SecretManagerStore:
    def __init__(self, cfg: PipelineConfig, client: Optional[secretmanager.SecretManagerServiceClient] = None) -> None:
        self._project_id = cfg.cloud_project_id
        self._refs = _provider_refs(cfg)
        self._client = client

    def _secret_version_name(self, secret_id: str) -> str:
        if secret_id.startswith("projects/"):
            if "/versions/" in secret_id:
                return secret_id
            return f"{secret_id}/versions/latest"
        return f"projects/{self._project_id}/secrets/{secret_id}/versions/latest"

    def read(self, provider: str) -> str:
        secret_id = self._refs.get(provider)
        if not secret_id:
            raise ValueError(f"시크릿이 정의되지 않은 provider 입니다: {provider}")

        name = self._secret_version_name(secret_id)
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceClient()

        logger.info("Secret Manager 에서 시크릿을 읽습니다: %s", name)
        try:
            response = self._client.access_secret_version(name=name)
        except NotFound as e:
            raise AuthenticationFailed(provider, f"Secret 없음 ({name})") from e
        except GoogleAPICallError as e:
            raise AuthenticationFailed(provider, f"Secret 조회 실패 ({name})") from e
        return response.payload.data.decode("utf-8")


def secret_store_for(cfg: PipelineConfig):  # noqa: ANN201
    if cfg.secret_source == "secret_manager":
        return SecretManagerStore(cfg)
    return ConfigSecretStore(cfg)
