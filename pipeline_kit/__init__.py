"""
pipeline_kit
------------

Node.js 프로젝트를 Docker Hub 와 Cloud Run 으로 배포하는 파이프라인 엔진.
테스트 → 이미지 빌드 → 푸시 → (조건부) 배포 순서를 하나의 실행 단위로 묶고,
트리거 정보(브랜치/이벤트/릴리즈)에 따라 staging/production 을 결정한다.
"""

__all__ = [
    "config",
    "pipeline",
]

__version__ = "0.1.0"
