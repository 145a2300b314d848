"""
credentials
-----------

run 동안만 유효한 자격증명 모델.

- CredentialSet: 이름 → secret 값의 순서 있는 매핑. repr/로그에 값이 드러나지 않는다.
- ToolEnv: 외부 명령에 명시적으로 넘기는 환경변수 오버레이.
- scoped_aws_config: 임시 디렉토리에 AWS 설정 파일을 만들고, 종료 경로와 상관없이 지운다.
"""

from __future__ import annotations

import os
import tempfile
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from .config import ConfigError
from .logging_utils import get_logger, register_secret
from .subprocess_utils import run_command


logger = get_logger(__name__)


AWS_ACCESS_KEY_ID = "AWS_ACCESS_KEY_ID"
AWS_SECRET_ACCESS_KEY = "AWS_SECRET_ACCESS_KEY"
RAILWAY_TOKEN = "RAILWAY_TOKEN"

BUILD_SECRETS = (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY)
PIPELINE_SECRETS = (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, RAILWAY_TOKEN)

# 상속된 환경에서 제거할 키. 다운스트림 도구는 ToolEnv 의 설정만 보게 한다.
_AMBIENT_AWS_KEYS = (
    AWS_ACCESS_KEY_ID,
    AWS_SECRET_ACCESS_KEY,
    "AWS_SESSION_TOKEN",
    "AWS_PROFILE",
    "AWS_CONFIG_FILE",
    "AWS_SHARED_CREDENTIALS_FILE",
)


class CredentialSet:
    """
    secret 저장소에서 읽어 온 값들의 순서 있는 매핑.
    생성 시 모든 값을 로그 마스킹 대상으로 등록한다.
    """

    def __init__(self, values: Optional[Mapping[str, str]] = None) -> None:
        self._values: "OrderedDict[str, str]" = OrderedDict(values or {})
        for value in self._values.values():
            register_secret(value)

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        names = ", ".join(f"{k}=***" for k in self._values)
        return f"CredentialSet({names})"

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(name, default)

    def names(self) -> List[str]:
        return list(self._values)

    def require(self, names: Iterable[str]) -> None:
        """
        필요한 secret 이 모두 있고 형식이 올바른지 확인한다.
        외부 명령을 하나라도 실행하기 전에 호출해야 한다.
        """
        missing: List[str] = []
        malformed: List[str] = []
        for name in names:
            value = self._values.get(name)
            if value is None or value == "":
                missing.append(name)
            elif value != value.strip() or "\n" in value or "\r" in value:
                malformed.append(name)

        problems: List[str] = []
        if missing:
            problems.append("누락/빈 값: " + ", ".join(missing))
        if malformed:
            problems.append("공백/개행 포함: " + ", ".join(malformed))
        if problems:
            raise ConfigError("secret 설정 오류 (" + "; ".join(problems) + ")")


@dataclass(frozen=True)
class ToolEnv:
    """
    외부 명령 하나에 넘길 환경변수 오버레이.
    프로세스 전역 os.environ 은 건드리지 않는다.
    """

    values: Mapping[str, str] = field(default_factory=dict)
    drop: Sequence[str] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))
        object.__setattr__(self, "drop", tuple(self.drop))

    def with_values(self, extra: Mapping[str, str]) -> "ToolEnv":
        merged = dict(self.values)
        merged.update(extra)
        return ToolEnv(values=merged, drop=self.drop)

    def merged(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = dict(os.environ if base is None else base)
        for key in self.drop:
            env.pop(key, None)
        env.update(self.values)
        return env


def isolated_env(
    credentials: Optional[CredentialSet] = None,
    values: Optional[Mapping[str, str]] = None,
) -> ToolEnv:
    """
    파이프라인 secret 이름을 모두 지운 ToolEnv.
    명령에 필요한 값은 values 로만 다시 넣는다.
    """
    drop = list(_AMBIENT_AWS_KEYS) + list(PIPELINE_SECRETS)
    if credentials is not None:
        drop += credentials.names()
    return ToolEnv(values=values or {}, drop=list(dict.fromkeys(drop)))


def _run(
    cmd: list[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = 60.0,
    stream_output: bool = False,
) -> None:
    run_command(cmd, cwd=cwd, env=env, timeout=timeout, stream_output=stream_output)


def configure_credential(tool_env: ToolEnv, field_name: str, value: str, *, timeout: float | None = 60.0) -> None:
    """``aws configure set <field> <value>`` 를 run 전용 설정 파일에 대해 실행한다."""
    logger.info("AWS 설정: %s", field_name)
    _run(
        ["aws", "configure", "set", field_name, value],
        env=tool_env.merged(),
        timeout=timeout,
    )


@contextmanager
def scoped_aws_config(
    credentials: CredentialSet,
    region: str,
    *,
    timeout: float | None = 60.0,
) -> Iterator[ToolEnv]:
    """
    run 전용 AWS 설정을 만든다.

    AWS_CONFIG_FILE / AWS_SHARED_CREDENTIALS_FILE 을 임시 디렉토리로 돌려서
    사용자 홈(~/.aws)이나 os.environ 에는 아무것도 남기지 않는다.
    성공/실패/취소 어느 경로든 with 블록을 벗어나면 임시 디렉토리를 지운다.
    """
    credentials.require(BUILD_SECRETS)
    if not region or not region.strip():
        raise ConfigError("AWS region 이 비어 있습니다.")

    with tempfile.TemporaryDirectory(prefix="pipeline-aws-") as tmp:
        tool_env = isolated_env(
            credentials,
            values={
                "AWS_CONFIG_FILE": os.path.join(tmp, "config"),
                "AWS_SHARED_CREDENTIALS_FILE": os.path.join(tmp, "credentials"),
                "AWS_REGION": region,
                "AWS_DEFAULT_REGION": region,
            },
        )
        configure_credential(tool_env, "aws_access_key_id", credentials[AWS_ACCESS_KEY_ID], timeout=timeout)
        configure_credential(tool_env, "aws_secret_access_key", credentials[AWS_SECRET_ACCESS_KEY], timeout=timeout)
        configure_credential(tool_env, "region", region, timeout=timeout)
        logger.info("run 전용 AWS 설정 준비 완료 (region=%s)", region)
        try:
            yield tool_env
        finally:
            logger.info("run 전용 AWS 설정을 정리합니다.")
