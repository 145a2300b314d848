"""
checkout
--------

트리거된 리비전(또는 원격 기본 브랜치 HEAD)으로 작업 사본을 맞춘다.
"""

from __future__ import annotations

from typing import Mapping, Optional

from .config import PipelineConfig
from .logging_utils import get_logger
from .subprocess_utils import run_command


logger = get_logger(__name__)


def _run(
    cmd: list[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    stream_output: bool = False,
) -> None:
    run_command(cmd, cwd=cwd, env=env, timeout=timeout, stream_output=stream_output)


def checkout_source(
    cfg: PipelineConfig,
    revision: Optional[str],
    *,
    cwd: str = ".",
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
) -> None:
    """
    revision 이 없으면 원격의 기본 리비전(HEAD)을 가져온다.
    env 는 secret 을 지운 환경을 넘긴다(git hook 등 저장소 코드가 실행될 수 있다).
    CHECKOUT=false 이면 현재 작업 디렉토리를 그대로 사용한다.
    """
    if not cfg.checkout:
        logger.info("CHECKOUT=false 로 설정되어 현재 작업 사본을 그대로 사용합니다.")
        return

    target = revision or "HEAD"
    logger.info("소스 체크아웃: %s@%s", cfg.git_remote, target)
    _run(
        ["git", "fetch", "--no-tags", "--depth=1", cfg.git_remote, target],
        cwd=cwd,
        env=env,
        timeout=timeout,
    )
    _run(
        ["git", "checkout", "--force", "--detach", "FETCH_HEAD"],
        cwd=cwd,
        env=env,
        timeout=timeout,
    )
