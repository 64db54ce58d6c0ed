"""
trigger
-------

소스 컨트롤 이벤트(GitHub Actions 등)로부터 PipelineRun 을 만든다.
"""

from __future__ import annotations

import json
import os
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class TriggerKind(str, Enum):
    PULL_REQUEST = "pull_request"
    PUSH = "push"
    MANUAL = "manual"
    RELEASE = "release"


# GitHub 이벤트 이름 -> TriggerKind
GITHUB_EVENT_KINDS: Dict[str, TriggerKind] = {
    "pull_request": TriggerKind.PULL_REQUEST,
    "pull_request_target": TriggerKind.PULL_REQUEST,
    "push": TriggerKind.PUSH,
    "workflow_dispatch": TriggerKind.MANUAL,
    "release": TriggerKind.RELEASE,
}


# docker 태그 규칙. 리비전은 그대로 이미지 태그가 된다.
DOCKER_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class PipelineRun:
    trigger: TriggerKind
    branch: str
    revision: str
    release_target: Optional[str] = None
    release_action: Optional[str] = None
    run_id: str = field(default_factory=_new_run_id)

    def __post_init__(self) -> None:
        if not self.revision:
            raise ValueError("revision 이 비어 있습니다.")
        if not DOCKER_TAG_RE.match(self.revision):
            raise ValueError(f"리비전을 docker 태그로 사용할 수 없습니다: {self.revision!r}")

    @property
    def ci_only(self) -> bool:
        """pull_request 는 테스트만 수행한다 (이미지 빌드/푸시/배포 없음)."""
        return self.trigger is TriggerKind.PULL_REQUEST

    def describe(self) -> str:
        parts = [f"trigger={self.trigger.value}", f"branch={self.branch}", f"revision={self.revision}"]
        if self.trigger is TriggerKind.RELEASE:
            parts.append(f"release_target={self.release_target}")
            parts.append(f"release_action={self.release_action}")
        return " ".join(parts)


def parse_trigger_kind(name: str) -> TriggerKind:
    key = (name or "").strip().lower()
    if key in GITHUB_EVENT_KINDS:
        return GITHUB_EVENT_KINDS[key]
    try:
        return TriggerKind(key)
    except ValueError as e:
        allowed = sorted({k.value for k in TriggerKind} | set(GITHUB_EVENT_KINDS))
        raise ValueError(f"지원하지 않는 이벤트입니다: {name!r} (허용: {', '.join(allowed)})") from e


def branch_from_ref(ref: str) -> str:
    """refs/heads/feature/x -> feature/x, refs/tags/v1 -> v1"""
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def _load_event_payload(path: Optional[str]) -> Dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return data if isinstance(data, dict) else {}


def run_from_github_env(environ: Optional[Mapping[str, str]] = None) -> PipelineRun:
    """
    GitHub Actions 가 주입하는 환경변수로 PipelineRun 을 구성한다.

    - GITHUB_EVENT_NAME: 이벤트 종류
    - GITHUB_REF / GITHUB_HEAD_REF: 브랜치 (PR 은 HEAD_REF 가 소스 브랜치)
    - GITHUB_SHA: 커밋 리비전
    - GITHUB_EVENT_PATH: release.action / release.target_commitish 가 담긴 이벤트 JSON
    """
    env = environ if environ is not None else os.environ

    kind = parse_trigger_kind(env.get("GITHUB_EVENT_NAME", ""))
    revision = env.get("GITHUB_SHA", "")
    if kind is TriggerKind.PULL_REQUEST and env.get("GITHUB_HEAD_REF"):
        branch = env["GITHUB_HEAD_REF"]
    else:
        branch = branch_from_ref(env.get("GITHUB_REF", ""))

    release_target: Optional[str] = None
    release_action: Optional[str] = None
    if kind is TriggerKind.RELEASE:
        payload = _load_event_payload(env.get("GITHUB_EVENT_PATH"))
        release = payload.get("release") or {}
        release_action = payload.get("action")
        release_target = release.get("target_commitish")

    return PipelineRun(
        trigger=kind,
        branch=branch,
        revision=revision,
        release_target=release_target,
        release_action=release_action,
    )
