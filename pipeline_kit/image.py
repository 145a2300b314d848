"""
image
-----

2단계(builder / runtime) 컨테이너 이미지 레시피.

- builder: 고정 버전 툴체인 이미지에서 소스 전체를 복사하고 빌드 의존성을 설치한 뒤 실행 파일 하나를 만든다.
- runtime: 최소 베이스 이미지에 런타임 의존성만 설치하고, builder 의 실행 파일 하나만 경로로 복사한다.

최종 이미지에는 툴체인, 소스 트리, 중간 빌드 산출물이 남지 않아야 한다.
"""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence, Tuple

from .config import PipelineConfig
from .logging_utils import get_logger
from .subprocess_utils import RunResult, run_command


logger = get_logger(__name__)


# runtime 단계에 들어가면 안 되는 패키지 (빌드 툴체인)
TOOLCHAIN_PACKAGES = frozenset(
    {
        "build-essential",
        "gcc",
        "g++",
        "make",
        "cmake",
        "clang",
        "pkg-config",
        "cargo",
        "rustc",
    }
)

DEFAULT_FORBIDDEN_PATHS: Tuple[str, ...] = (
    "/usr/local/cargo",
    "/usr/local/rustup",
    "/usr/bin/gcc",
    "/usr/bin/cc",
    "/app/src",
    "/app/Cargo.toml",
    "/app/target",
)


def _run(
    cmd: list[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = 1800.0,
    stream_output: bool = False,
) -> RunResult:
    return run_command(cmd, cwd=cwd, env=env, timeout=timeout, stream_output=stream_output)


@dataclass(frozen=True)
class ImageRecipe:
    builder_image: str
    runtime_image: str
    binary_name: str
    build_packages: Tuple[str, ...] = ()
    runtime_packages: Tuple[str, ...] = ()
    build_command: Tuple[str, ...] = ("cargo", "build", "--release")
    artifact_dir: str = "target/release"
    workdir: str = "/app"
    labels: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: PipelineConfig) -> "ImageRecipe":
        return cls(
            builder_image=cfg.builder_image,
            runtime_image=cfg.runtime_image,
            binary_name=cfg.binary_name,
            build_packages=tuple(cfg.build_packages),
            runtime_packages=tuple(cfg.runtime_packages),
            build_command=tuple(cfg.release_build_command),
            artifact_dir=cfg.artifact_dir,
        )

    @property
    def artifact_path(self) -> str:
        parts = [p.strip("/") for p in (self.workdir, self.artifact_dir, self.binary_name) if p.strip("/")]
        return "/" + "/".join(parts)

    def render_dockerfile(self) -> str:
        lines: List[str] = []
        lines.append("# ---- Build Stage ----")
        lines.append(f"FROM {self.builder_image} AS builder")
        lines.append("")
        lines.append(f"WORKDIR {self.workdir}")
        lines.append("COPY . .")
        if self.build_packages:
            lines.append(_apt_install(self.build_packages))
        lines.append(f"RUN {shlex.join(self.build_command)}")
        lines.append("")
        lines.append("# ---- Runtime Stage ----")
        lines.append(f"FROM {self.runtime_image}")
        lines.append("")
        if self.runtime_packages:
            lines.append(_apt_install(self.runtime_packages))
        for key, value in sorted(self.labels.items()):
            lines.append(f"LABEL {key}={shlex.quote(value)}")
        lines.append(f"WORKDIR {self.workdir}")
        lines.append(f"COPY --from=builder {self.artifact_path} ./{self.binary_name}")
        lines.append("")
        lines.append(f'ENTRYPOINT ["./{self.binary_name}"]')
        return "\n".join(lines) + "\n"


def _apt_install(packages: Sequence[str]) -> str:
    return (
        "RUN apt-get update && apt-get install -y --no-install-recommends "
        + " ".join(packages)
        + " && rm -rf /var/lib/apt/lists/*"
    )


def check_recipe_isolation(recipe: ImageRecipe) -> List[str]:
    """
    레시피만 보고 runtime 단계가 격리되어 있는지 점검한다. 문제 목록을 반환한다.
    """
    issues: List[str] = []
    if not recipe.binary_name or "/" in recipe.binary_name:
        issues.append(f"BINARY_NAME 이 올바르지 않습니다: {recipe.binary_name!r}")
    if recipe.builder_image.endswith(":latest") or ":" not in recipe.builder_image:
        issues.append(f"builder 이미지는 툴체인 버전을 고정해야 합니다: {recipe.builder_image}")

    for pkg in recipe.runtime_packages:
        if pkg in TOOLCHAIN_PACKAGES or pkg.endswith("-dev"):
            issues.append(f"runtime 단계에 빌드용 패키지가 포함되어 있습니다: {pkg}")
        elif pkg in recipe.build_packages:
            issues.append(f"runtime 단계에 build 단계 패키지가 그대로 포함되어 있습니다: {pkg}")

    return issues


def write_dockerfile(recipe: ImageRecipe, path: str) -> str:
    with open(path, "w", encoding="utf-8") as f:
        f.write(recipe.render_dockerfile())
    logger.info("Dockerfile 생성: %s", path)
    return path


def build_image(recipe: ImageRecipe, tag: str, context_dir: str = ".", *, timeout: Optional[float] = 1800.0) -> str:
    """
    레시피로 이미지를 빌드하고 태그를 반환한다.
    어느 단계든 실패하면 docker build 전체가 실패하므로 부분 이미지는 남지 않는다.
    """
    issues = check_recipe_isolation(recipe)
    if issues:
        raise ValueError("이미지 레시피 점검 실패:\n" + "\n".join(f"- {i}" for i in issues))

    with tempfile.TemporaryDirectory(prefix="pipeline-image-") as tmp:
        dockerfile = write_dockerfile(recipe, os.path.join(tmp, "Dockerfile"))
        _run(
            ["docker", "build", "-f", dockerfile, "-t", tag, context_dir],
            timeout=timeout,
            stream_output=True,
        )
    logger.info("이미지 빌드 완료: %s", tag)
    return tag


def push_image(tag: str, *, timeout: Optional[float] = 900.0) -> None:
    _run(["docker", "push", tag], timeout=timeout, stream_output=True)
    logger.info("이미지 푸시 완료: %s", tag)


_PROBE_SCRIPT = 'for p in "$@"; do if [ -e "$p" ]; then echo "$p"; fi; done'


def verify_runtime_image(
    tag: str,
    recipe: ImageRecipe,
    forbidden_paths: Sequence[str] = DEFAULT_FORBIDDEN_PATHS,
) -> List[str]:
    """
    빌드된 이미지를 직접 열어 격리 여부를 확인한다. 문제 목록을 반환한다.

    - 실행 파일이 WORKDIR 에 있어야 한다.
    - 툴체인/소스 경로가 하나도 없어야 한다.
    """
    executable = f"{recipe.workdir.rstrip('/')}/{recipe.binary_name}"
    probe = [executable, *forbidden_paths]
    result = _run(
        ["docker", "run", "--rm", "--entrypoint", "/bin/sh", tag, "-c", _PROBE_SCRIPT, "sh", *probe],
        timeout=300.0,
    )
    present = {line.strip() for line in result.stdout.splitlines() if line.strip()}

    issues: List[str] = []
    if executable not in present:
        issues.append(f"실행 파일이 없습니다: {executable}")
    for path in forbidden_paths:
        if path in present:
            issues.append(f"runtime 이미지에 남아 있으면 안 되는 경로가 있습니다: {path}")
    return issues
