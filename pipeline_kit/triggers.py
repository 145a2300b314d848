"""
triggers
--------

파이프라인 실행을 시작시키는 외부 이벤트(트리거) 모델.
CI 호스트(GitHub Actions)가 넘겨주는 환경변수에서 이벤트를 읽는다.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from typing import Iterable, Optional

from .config import ConfigError


class TriggerKind(str, Enum):
    PULL_REQUEST = "pull_request"
    MANUAL_DISPATCH = "workflow_dispatch"


@dataclass(frozen=True)
class TriggerEvent:
    kind: TriggerKind
    # pull_request 는 대상(base) 브랜치, workflow_dispatch 는 실행 ref 브랜치
    branch: Optional[str] = None
    revision: Optional[str] = None

    @classmethod
    def from_env(cls) -> "TriggerEvent":
        raw = os.getenv("GITHUB_EVENT_NAME")
        if not raw:
            raise ConfigError("GITHUB_EVENT_NAME 이 설정되지 않아 트리거를 판별할 수 없습니다.")
        try:
            kind = TriggerKind(raw)
        except ValueError as e:
            raise ConfigError(
                f"지원하지 않는 트리거입니다: {raw!r} (pull_request | workflow_dispatch)"
            ) from e

        if kind is TriggerKind.PULL_REQUEST:
            branch = os.getenv("GITHUB_BASE_REF")
        else:
            branch = os.getenv("GITHUB_REF_NAME")
        return cls(kind=kind, branch=branch or None, revision=os.getenv("GITHUB_SHA") or None)

    def matches(self, branches: Iterable[str]) -> bool:
        """
        브랜치 필터 검사. 수동 실행은 파라미터가 없으므로 항상 통과한다.
        """
        if self.kind is TriggerKind.MANUAL_DISPATCH:
            return True
        if not self.branch:
            return False
        return any(fnmatchcase(self.branch, pattern) for pattern in branches)
