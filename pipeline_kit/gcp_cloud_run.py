"""
gcp_cloud_run
-------------

Cloud Run 서비스 배포 책임을 가지는 모듈.
"""

from __future__ import annotations

from typing import Optional

from .credentials import Session
from .errors import TransientError
from .logging_utils import get_logger
from .subprocess_utils import CommandRunner, CommandTimeout, CommandFailed, output_contains, run_command


logger = get_logger(__name__)


TRANSIENT_MARKERS = (
    "unavailable",
    "deadline exceeded",
    "deadline_exceeded",
    "internal error",
    "connection reset",
    "connection aborted",
    "timed out",
    "try again",
    "httperror 503",
    "httperror 504",
    "status code: 503",
    "status code: 504",
    "503 service unavailable",
    "504 gateway",
)


class DeployCallRejected(CommandFailed):
    """플랫폼이 배포 요청을 거부함 (쿼터, 잘못된 이름, 권한 등). 재시도하지 않는다."""


class CloudRunPlatform:
    def __init__(self, project_id: str, *, runner: CommandRunner = run_command, timeout: float = 600.0) -> None:
        self._project_id = project_id
        self._runner = runner
        self._timeout = timeout

    def deploy(
        self,
        service_name: str,
        region: str,
        image_url: str,
        traffic_tag: str,
        session: Optional[Session] = None,
    ) -> Optional[str]:
        """
        gcloud run deploy 로 새 리비전을 배포하고, traffic_tag 를 새 리비전에 붙인다.
        같은 이미지로 다시 배포해도 안전하며 태그가 새 리비전으로 옮겨갈 뿐이다.

        Returns:
            서비스 URL (gcloud 출력에서 얻을 수 있는 경우)
        """
        cmd = [
            "gcloud",
            "run",
            "deploy",
            service_name,
            f"--image={image_url}",
            f"--region={region}",
            f"--project={self._project_id}",
            f"--tag={traffic_tag}",
            "--platform=managed",
            "--quiet",
            "--format=value(status.url)",
        ]
        env = dict(session.env) if session is not None else None
        try:
            result = self._runner(cmd, env=env, timeout=self._timeout)
        except CommandTimeout as e:
            raise TransientError(f"Cloud Run 배포 타임아웃: {service_name}") from e
        except CommandFailed as e:
            if output_contains(e.output, TRANSIENT_MARKERS):
                raise TransientError(f"Cloud Run 배포 일시적 실패: {service_name}") from e
            raise DeployCallRejected(str(e), returncode=e.returncode, output=e.output) from e

        url = result.stdout.strip() or None
        logger.info("Cloud Run 배포 완료: service=%s region=%s tag=%s url=%s", service_name, region, traffic_tag, url)
        return url
