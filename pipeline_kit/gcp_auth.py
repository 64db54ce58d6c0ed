"""
gcp_auth
--------

gcloud 서비스 계정 인증을 담당한다.

실행마다 별도의 CLOUDSDK_CONFIG 디렉토리를 만들어 사용하므로
사용자 로컬 gcloud 상태나 동시에 도는 다른 실행과 섞이지 않는다.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import shutil
import tempfile
from typing import Any, Dict

from .credentials import CLOUD, Session
from .errors import AuthenticationFailed
from .logging_utils import get_logger, register_secret
from .subprocess_utils import CommandFailed, CommandRunner, run_command


logger = get_logger(__name__)


def parse_service_account_key(secret_material: str) -> Dict[str, Any]:
    """
    서비스 계정 키(JSON)를 파싱한다. GitHub secrets 처럼 base64 로 넣은 값도 허용.
    실패 메시지에는 키 내용을 넣지 않는다.
    """
    raw = secret_material.strip()
    if not raw.startswith("{"):
        try:
            raw = base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            raise AuthenticationFailed(CLOUD, "서비스 계정 키 형식이 올바르지 않습니다") from None
        # 디코딩된 키도 로그에서 가린다
        register_secret(raw)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise AuthenticationFailed(CLOUD, "서비스 계정 키 JSON 을 파싱할 수 없습니다") from None
    if not isinstance(data, dict) or not data.get("client_email"):
        raise AuthenticationFailed(CLOUD, "서비스 계정 키에 client_email 이 없습니다")
    for name in ("private_key", "private_key_id"):
        if isinstance(data.get(name), str):
            register_secret(data[name])
    return data


class GcloudAuthenticator:
    provider = CLOUD

    def __init__(self, project_id: str, *, runner: CommandRunner = run_command) -> None:
        self._project_id = project_id
        self._runner = runner

    def login(self, secret_material: str, *, timeout: float) -> Session:
        key = parse_service_account_key(secret_material)
        account = key["client_email"]

        config_dir = tempfile.mkdtemp(prefix="pipeline-gcloud-")
        env = {"CLOUDSDK_CONFIG": config_dir, "CLOUDSDK_CORE_DISABLE_PROMPTS": "1"}
        key_path = os.path.join(config_dir, "key.json")
        try:
            # 키 파일은 activate 호출 동안만 존재한다.
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(key, f)

            self._runner(
                [
                    "gcloud",
                    "auth",
                    "activate-service-account",
                    account,
                    f"--key-file={key_path}",
                    f"--project={self._project_id}",
                ],
                env=env,
                timeout=timeout,
            )
        except CommandFailed as e:
            shutil.rmtree(config_dir, ignore_errors=True)
            raise AuthenticationFailed(CLOUD, type(e).__name__) from e
        except BaseException:
            shutil.rmtree(config_dir, ignore_errors=True)
            raise
        finally:
            if os.path.exists(key_path):
                os.remove(key_path)

        logger.info("gcloud 서비스 계정 활성화: %s (project=%s)", account, self._project_id)
        return Session(provider=CLOUD, handle=account, env=env, workdir=config_dir)

    def logout(self, session: Session, *, timeout: float) -> None:
        self._runner(
            ["gcloud", "auth", "revoke", session.handle, "--quiet"],
            env=dict(session.env),
            timeout=timeout,
        )
