"""
credentials
-----------

장기 시크릿을 실행 단위(PipelineRun) 동안만 유효한 세션으로 교환하는 브로커.

- 세션은 scope() 안에서만 살아 있고, 종료 경로와 상관없이 반드시 해제된다.
- 시크릿/토큰은 로그에 남기지 않는다 (logging_utils 마스킹 필터에 등록).
"""

from __future__ import annotations

import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Protocol

from .errors import AuthenticationFailed, PipelineError
from .logging_utils import get_logger, register_secret
from .subprocess_utils import CommandFailed


logger = get_logger(__name__)

REGISTRY = "registry"
CLOUD = "cloud"


@dataclass(frozen=True)
class Session:
    provider: str
    # provider 가 돌려준 불투명 핸들 (계정 이름, 토큰 등)
    handle: str = field(repr=False)
    # 이 세션으로 CLI 를 호출할 때 필요한 환경변수 (DOCKER_CONFIG 등)
    env: Mapping[str, str] = field(default_factory=dict, repr=False)
    # 해제 시 지울 임시 디렉토리
    workdir: Optional[str] = field(default=None, repr=False)


class Authenticator(Protocol):
    provider: str

    def login(self, secret_material: str, *, timeout: float) -> Session:
        ...

    def logout(self, session: Session, *, timeout: float) -> None:
        ...


class SecretStore(Protocol):
    def read(self, provider: str) -> str:
        ...


class CredentialSet:
    """provider 이름 -> Session. 하나의 PipelineRun 에만 속한다."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def __contains__(self, provider: object) -> bool:
        return provider in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, provider: str) -> Session:
        try:
            return self._sessions[provider]
        except KeyError:
            raise KeyError(f"인증되지 않은 provider 입니다: {provider}") from None

    def _add(self, session: Session) -> None:
        self._sessions[session.provider] = session

    def _pop_all(self) -> List[Session]:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        return sessions


class CredentialBroker:
    def __init__(
        self,
        authenticators: Mapping[str, Authenticator],
        *,
        secret_store: Optional[SecretStore] = None,
        timeout: float = 120.0,
    ) -> None:
        self._authenticators = dict(authenticators)
        self._secret_store = secret_store
        self._timeout = timeout
        self.credentials = CredentialSet()

    def authenticate(self, provider: str, secret_material: str) -> Session:
        """
        secret_material 로 provider 세션을 얻는다.
        같은 실행에서 이미 얻은 세션이 있으면 재사용한다.
        """
        if provider in self.credentials:
            return self.credentials.get(provider)

        auth = self._authenticators.get(provider)
        if auth is None:
            raise ValueError(f"등록되지 않은 provider 입니다: {provider}")

        if not secret_material:
            raise AuthenticationFailed(provider, "시크릿이 비어 있습니다")
        register_secret(secret_material)

        logger.info("인증 시작: provider=%s", provider)
        try:
            session = auth.login(secret_material, timeout=self._timeout)
        except AuthenticationFailed:
            raise
        except (CommandFailed, PipelineError) as e:
            # 원인 메시지는 남기되 시크릿은 담기지 않도록 provider 단위로만 보고
            raise AuthenticationFailed(provider, type(e).__name__) from e

        self.credentials._add(session)
        logger.info("인증 완료: provider=%s", provider)
        return session

    def acquire(self, provider: str) -> Session:
        """시크릿 저장소에서 시크릿을 읽어 인증한다."""
        if provider in self.credentials:
            return self.credentials.get(provider)
        if self._secret_store is None:
            raise ValueError("secret_store 가 설정되지 않았습니다.")
        return self.authenticate(provider, self._secret_store.read(provider))

    def release_all(self) -> None:
        """
        얻은 세션을 모두 해제한다. 하나의 해제가 실패해도 나머지는 계속 해제하고,
        임시 디렉토리는 항상 지운다.
        """
        for session in reversed(self.credentials._pop_all()):
            auth = self._authenticators.get(session.provider)
            try:
                if auth is not None:
                    auth.logout(session, timeout=self._timeout)
                logger.info("세션 해제: provider=%s", session.provider)
            except Exception:  # noqa: BLE001
                logger.exception("세션 해제 실패: provider=%s", session.provider)
            finally:
                if session.workdir:
                    shutil.rmtree(session.workdir, ignore_errors=True)

    @contextmanager
    def scope(self) -> Iterator["CredentialBroker"]:
        try:
            yield self
        finally:
            self.release_all()
