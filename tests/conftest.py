"""
pytest 설정:

로컬 작업 환경에 설치된 다른 버전의 pipeline_kit 패키지가 존재할 때,
`pytest` 실행 시 site-packages 쪽이 먼저 import 되어 테스트가 깨질 수 있다.

테스트는 항상 현재 레포의 소스를 대상으로 해야 하므로, repo root 를 sys.path 최상단에 고정한다.

외부 명령(git/aws/cargo/railway/docker)은 각 모듈의 `_run` 을 FakeCommands 로 바꿔서 기록만 한다.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import pytest


def pytest_configure() -> None:
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


CONFIG_ENV_KEYS = [
    "PIPELINE_BRANCHES", "CHECKOUT", "GIT_REMOTE", "SOURCE_DIR",
    "AWS_REGION", "SECRET_BACKEND", "GCP_PROJECT_ID", "SECRET_PREFIX",
    "ENABLE_CACHE", "CACHE_PLATFORM", "CACHE_NAMESPACE", "CACHE_MANIFESTS", "CACHE_PATHS",
    "CACHE_BACKEND", "CACHE_DIR", "CACHE_BUCKET", "CACHE_BUCKET_PREFIX",
    "BUILD_COMMAND", "TEST_COMMAND", "BUILD_ENV",
    "RAILWAY_PROJECT_ID", "RAILWAY_SERVICE_ID", "DEPLOY_VARIABLES",
    "BUILDER_IMAGE", "RUNTIME_IMAGE", "BUILD_PACKAGES", "RUNTIME_PACKAGES",
    "BINARY_NAME", "IMAGE_TAG", "RELEASE_BUILD_COMMAND", "ARTIFACT_DIR",
    "RUN_TIMEOUT_SECONDS",
    "GITHUB_EVENT_NAME", "GITHUB_BASE_REF", "GITHUB_REF_NAME", "GITHUB_SHA",
    "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "RAILWAY_TOKEN",
    "AWS_CONFIG_FILE", "AWS_SHARED_CREDENTIALS_FILE",
]


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for key in CONFIG_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@dataclass
class Call:
    cmd: List[str]
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    timeout: Optional[float] = None


@dataclass
class FakeCommands:
    calls: List[Call] = field(default_factory=list)
    _failures: List[tuple] = field(default_factory=list)
    _hooks: List[tuple] = field(default_factory=list)
    _outputs: List[tuple] = field(default_factory=list)

    def fail_when(self, predicate: Callable[[List[str]], bool], returncode: int = 1) -> None:
        self._failures.append((predicate, returncode))

    def on(self, predicate: Callable[[List[str]], bool], hook: Callable[[Call], None]) -> None:
        self._hooks.append((predicate, hook))

    def output_when(self, predicate: Callable[[List[str]], bool], stdout: str) -> None:
        self._outputs.append((predicate, stdout))

    def __call__(self, cmd, *, cwd=None, env=None, timeout=None, stream_output=False):  # noqa: ANN001, ARG002
        from pipeline_kit.subprocess_utils import CommandError, RunResult

        call = Call(cmd=list(cmd), cwd=cwd, env=dict(env) if env is not None else None, timeout=timeout)
        self.calls.append(call)
        for predicate, hook in self._hooks:
            if predicate(call.cmd):
                hook(call)
        for predicate, returncode in self._failures:
            if predicate(call.cmd):
                raise CommandError(
                    f"명령 실행 실패: {' '.join(cmd)} (exit={returncode})",
                    cmd=" ".join(cmd),
                    returncode=returncode,
                )
        stdout = ""
        for predicate, out in self._outputs:
            if predicate(call.cmd):
                stdout = out
        return RunResult(returncode=0, stdout=stdout, stderr="")

    def programs(self) -> List[str]:
        return [c.cmd[0] for c in self.calls]

    def matching(self, *prefix: str) -> List[Call]:
        return [c for c in self.calls if c.cmd[: len(prefix)] == list(prefix)]


@pytest.fixture
def commands(monkeypatch: pytest.MonkeyPatch) -> FakeCommands:
    from pipeline_kit import build_pipeline, checkout, credentials, deploy_pipeline, image

    fake = FakeCommands()
    for module in (build_pipeline, checkout, credentials, deploy_pipeline, image):
        monkeypatch.setattr(module, "_run", fake)
    return fake
