"""
pipeline_kit
------------

변경 제안마다 빌드/테스트를 돌리고, 수동 실행으로 배포하며,
2단계 컨테이너 이미지를 만드는 CI/CD 파이프라인 실행 패키지.
외부 도구(git, aws, cargo, railway, docker)는 모두 명령행으로 호출한다.
"""

__all__ = [
    "config",
    "orchestrator",
]
