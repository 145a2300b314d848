"""
build_pipeline
--------------

변경 제안(pull request)마다 실행되는 빌드/테스트 파이프라인.

checkout → configure-credentials → restore-cache → build → test → save-cache

- 모든 단계는 fail-fast. 컴파일/테스트 실패 시 캐시는 저장되지 않는다.
- 캐시 단계의 실패는 최적화만 건너뛰고 run 을 실패시키지 않는다.
- AWS 자격증명은 run 전용 임시 설정으로만 존재하고, run 이 끝나면(실패/취소 포함) 지워진다.
"""

from __future__ import annotations

import os
from contextlib import ExitStack
from typing import List, Mapping, Optional

from . import cache
from .checkout import checkout_source
from .config import PipelineConfig
from .credentials import CredentialSet, ToolEnv, isolated_env, scoped_aws_config
from .logging_utils import get_logger
from .stages import RunDeadline, RunReport, StageRunner, Step
from .subprocess_utils import run_command
from .triggers import TriggerEvent, TriggerKind


logger = get_logger(__name__)

PIPELINE_NAME = "build-and-test"

STEP_CHECKOUT = "checkout"
STEP_CREDENTIALS = "configure-credentials"
STEP_RESTORE_CACHE = "restore-cache"
STEP_BUILD = "build"
STEP_TEST = "test"
STEP_SAVE_CACHE = "save-cache"


def _run(
    cmd: list[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    stream_output: bool = False,
) -> None:
    run_command(cmd, cwd=cwd, env=env, timeout=timeout, stream_output=stream_output)


class BuildAndTestPipeline:
    """
    한 번의 run 상태(ToolEnv, 캐시 키, 복원된 키)를 들고 단계들을 실행한다.
    인스턴스는 run 하나에만 사용한다.
    """

    def __init__(
        self,
        cfg: PipelineConfig,
        credentials: CredentialSet,
        *,
        store: Optional[cache.CacheStore] = None,
        base_dir: str = ".",
        deadline: Optional[RunDeadline] = None,
    ) -> None:
        self.cfg = cfg
        self.credentials = credentials
        self.base_dir = base_dir
        self.deadline = deadline or RunDeadline(cfg.run_timeout)
        self._store = store
        self._stack: Optional[ExitStack] = None
        self._base_env = isolated_env(credentials)
        self._tool_env: Optional[ToolEnv] = None
        self._cache_key: Optional[cache.CacheKey] = None
        self._restored_key: Optional[str] = None

    @property
    def source_dir(self) -> str:
        return os.path.join(self.base_dir, self.cfg.source_dir)

    def _get_store(self) -> cache.CacheStore:
        if self._store is None:
            self._store = cache.open_cache_store(self.cfg, self.base_dir)
        return self._store

    # -----------------------------
    # steps
    # -----------------------------
    def checkout(self, revision: Optional[str]) -> None:
        checkout_source(
            self.cfg,
            revision,
            cwd=self.source_dir,
            env=self._base_env.merged(),
            timeout=self.deadline.command_timeout(),
        )

    def configure_credentials(self) -> None:
        if self._stack is None:
            raise RuntimeError("configure_credentials 는 run() 안에서만 호출할 수 있습니다.")
        self._tool_env = self._stack.enter_context(
            scoped_aws_config(
                self.credentials,
                self.cfg.aws_region,
                timeout=self.deadline.command_timeout(60.0),
            )
        )

    def restore_cache(self) -> None:
        self._cache_key = cache.compute_cache_key(
            self.cfg.cache_platform,
            self.cfg.cache_manifests,
            base_dir=self.source_dir,
            namespace=self.cfg.cache_namespace,
        )
        logger.info("캐시 키: %s", self._cache_key.key)
        self._restored_key = cache.restore_cache(self._get_store(), self._cache_key, self.cfg.cache_paths)

    def _tool_command(self, cmd: List[str]) -> None:
        tool_env = self._tool_env or self._base_env
        _run(
            list(cmd),
            cwd=self.source_dir,
            env=tool_env.with_values(self.cfg.build_env).merged(),
            timeout=self.deadline.command_timeout(),
            stream_output=True,
        )

    def build(self) -> None:
        self._tool_command(self.cfg.build_command)

    def test(self) -> None:
        self._tool_command(self.cfg.test_command)

    def save_cache(self) -> None:
        if self._cache_key is None:
            raise cache.CacheError("캐시 키가 계산되지 않아 저장을 건너뜁니다.")
        cache.save_cache(self._get_store(), self._cache_key, self.cfg.cache_paths, self._restored_key)

    def steps(self, event: TriggerEvent) -> List[Step]:
        steps = [
            Step(STEP_CHECKOUT, lambda: self.checkout(event.revision), kind="infra"),
            Step(STEP_CREDENTIALS, self.configure_credentials, kind="config"),
        ]
        if self.cfg.enable_cache:
            steps.append(Step(STEP_RESTORE_CACHE, self.restore_cache, kind="infra", fatal=False))
        steps.append(Step(STEP_BUILD, self.build, kind="build"))
        steps.append(Step(STEP_TEST, self.test, kind="test"))
        if self.cfg.enable_cache:
            steps.append(Step(STEP_SAVE_CACHE, self.save_cache, kind="infra", fatal=False))
        return steps

    def run(self, event: TriggerEvent) -> RunReport:
        if event.kind is not TriggerKind.PULL_REQUEST or not event.matches(self.cfg.branches):
            logger.info(
                "트리거 조건 불일치로 실행하지 않습니다: kind=%s branch=%s filter=%s",
                event.kind.value,
                event.branch,
                self.cfg.branches,
            )
            return RunReport(
                pipeline=PIPELINE_NAME,
                triggered=False,
                notes=[f"trigger {event.kind.value} on {event.branch or '(none)'} does not match {self.cfg.branches}"],
            )

        with ExitStack() as stack:
            self._stack = stack
            try:
                return StageRunner(PIPELINE_NAME, self.deadline).run(self.steps(event))
            finally:
                self._stack = None
                self._tool_env = None


def run_build_and_test(
    cfg: PipelineConfig,
    event: TriggerEvent,
    credentials: CredentialSet,
    *,
    store: Optional[cache.CacheStore] = None,
    base_dir: str = ".",
) -> RunReport:
    return BuildAndTestPipeline(cfg, credentials, store=store, base_dir=base_dir).run(event)
