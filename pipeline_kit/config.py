from __future__ import annotations

import os
import platform
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv


# .env.secrets 는 os.environ 에 올리지 않는다. secret_store 가 dotenv_values 로 따로 읽는다.
ENV_FILES_DEFAULT_ORDER = [".env", ".env.pipeline"]

DEFAULT_DEPLOY_VARIABLES = "AWS_ACCESS_KEY_ID,AWS_SECRET_ACCESS_KEY,AWS_DEFAULT_REGION=eu-central-1"


class ConfigError(ValueError):
    """필수 설정/secret 누락 또는 형식 오류."""


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y"}


def _get_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return list(default)
    return [p.strip() for p in raw.split(",") if p.strip()]


def _get_command(name: str, default: str) -> List[str]:
    return shlex.split(os.getenv(name) or default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} 는 숫자여야 합니다: {raw!r}") from e


def _get_mapping(name: str, default: Dict[str, str]) -> Dict[str, str]:
    raw = os.getenv(name)
    if raw is None:
        return dict(default)
    result: Dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise ConfigError(f"{name} 항목은 KEY=VALUE 형식이어야 합니다: {item!r}")
        key, value = item.split("=", 1)
        result[key.strip()] = value.strip()
    return result


@dataclass(frozen=True)
class VariableBinding:
    """
    배포 대상에 설정할 환경변수 하나.
    secret 이 있으면 CredentialSet 에서, 없으면 literal 값을 사용한다.
    """

    name: str
    secret: Optional[str] = None
    literal: Optional[str] = None


def parse_variable_bindings(raw: str) -> List[VariableBinding]:
    """
    DEPLOY_VARIABLES 파싱.

    - ``NAME``          : 같은 이름의 secret
    - ``NAME=@SECRET``  : 다른 이름의 secret
    - ``NAME=value``    : literal 값
    """
    bindings: List[VariableBinding] = []
    seen: set[str] = set()
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" in item:
            name, value = (p.strip() for p in item.split("=", 1))
            if value.startswith("@"):
                binding = VariableBinding(name=name, secret=value[1:])
            else:
                binding = VariableBinding(name=name, literal=value)
        else:
            binding = VariableBinding(name=item, secret=item)
        if not binding.name:
            raise ConfigError(f"DEPLOY_VARIABLES 에 이름이 빈 항목이 있습니다: {item!r}")
        if binding.name in seen:
            raise ConfigError(f"DEPLOY_VARIABLES 에 중복된 이름이 있습니다: {binding.name}")
        seen.add(binding.name)
        bindings.append(binding)
    return bindings


def _default_platform() -> str:
    return platform.system().lower() or "unknown"


@dataclass
class PipelineConfig:
    # 트리거 / 체크아웃
    branches: List[str] = field(default_factory=lambda: ["main"])
    checkout: bool = True
    git_remote: str = "origin"
    source_dir: str = "."

    # 자격증명
    aws_region: str = "eu-central-1"
    secret_backend: str = "env"
    gcp_project_id: Optional[str] = None
    secret_prefix: str = ""

    # 캐시
    enable_cache: bool = True
    cache_platform: str = field(default_factory=_default_platform)
    cache_namespace: str = "cargo"
    cache_manifests: List[str] = field(
        default_factory=lambda: ["**/Cargo.toml", "**/Cargo.lock"]
    )
    cache_paths: List[str] = field(
        default_factory=lambda: ["~/.cargo/registry", "~/.cargo/bin"]
    )
    cache_backend: str = "local"
    cache_dir: str = ".pipeline-cache"
    cache_bucket: Optional[str] = None
    cache_bucket_prefix: str = "pipeline-cache/"

    # 빌드 / 테스트
    build_command: List[str] = field(default_factory=lambda: ["cargo", "build", "--verbose"])
    test_command: List[str] = field(default_factory=lambda: ["cargo", "test", "--verbose"])
    build_env: Dict[str, str] = field(default_factory=lambda: {"CARGO_TERM_COLOR": "always"})

    # 배포
    railway_project_id: Optional[str] = None
    railway_service_id: Optional[str] = None
    deploy_variables: List[VariableBinding] = field(
        default_factory=lambda: parse_variable_bindings(DEFAULT_DEPLOY_VARIABLES)
    )

    # 이미지
    builder_image: str = "rust:1.70-bullseye"
    runtime_image: str = "debian:bullseye-slim"
    build_packages: List[str] = field(default_factory=lambda: ["pkg-config", "libssl-dev"])
    runtime_packages: List[str] = field(default_factory=lambda: ["libssl1.1", "ca-certificates"])
    binary_name: str = "my-rust-app"
    image_tag: Optional[str] = None
    release_build_command: List[str] = field(
        default_factory=lambda: ["cargo", "build", "--release"]
    )
    artifact_dir: str = "target/release"

    run_timeout: float = 3600.0

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        default = cls()
        cfg = cls(
            branches=_get_list("PIPELINE_BRANCHES", default.branches),
            checkout=_get_bool("CHECKOUT", True),
            git_remote=os.getenv("GIT_REMOTE", default.git_remote),
            source_dir=os.getenv("SOURCE_DIR", default.source_dir),
            aws_region=os.getenv("AWS_REGION") or default.aws_region,
            secret_backend=(os.getenv("SECRET_BACKEND") or "env").lower(),
            gcp_project_id=os.getenv("GCP_PROJECT_ID"),
            secret_prefix=os.getenv("SECRET_PREFIX", ""),
            enable_cache=_get_bool("ENABLE_CACHE", True),
            cache_platform=os.getenv("CACHE_PLATFORM") or default.cache_platform,
            cache_namespace=os.getenv("CACHE_NAMESPACE", default.cache_namespace),
            cache_manifests=_get_list("CACHE_MANIFESTS", default.cache_manifests),
            cache_paths=_get_list("CACHE_PATHS", default.cache_paths),
            cache_backend=(os.getenv("CACHE_BACKEND") or "local").lower(),
            cache_dir=os.getenv("CACHE_DIR", default.cache_dir),
            cache_bucket=os.getenv("CACHE_BUCKET"),
            cache_bucket_prefix=os.getenv("CACHE_BUCKET_PREFIX", default.cache_bucket_prefix),
            build_command=_get_command("BUILD_COMMAND", "cargo build --verbose"),
            test_command=_get_command("TEST_COMMAND", "cargo test --verbose"),
            build_env=_get_mapping("BUILD_ENV", default.build_env),
            railway_project_id=os.getenv("RAILWAY_PROJECT_ID"),
            railway_service_id=os.getenv("RAILWAY_SERVICE_ID"),
            deploy_variables=parse_variable_bindings(
                os.getenv("DEPLOY_VARIABLES") or DEFAULT_DEPLOY_VARIABLES
            ),
            builder_image=os.getenv("BUILDER_IMAGE") or default.builder_image,
            runtime_image=os.getenv("RUNTIME_IMAGE") or default.runtime_image,
            build_packages=_get_list("BUILD_PACKAGES", default.build_packages),
            runtime_packages=_get_list("RUNTIME_PACKAGES", default.runtime_packages),
            binary_name=os.getenv("BINARY_NAME") or default.binary_name,
            image_tag=os.getenv("IMAGE_TAG"),
            release_build_command=_get_command("RELEASE_BUILD_COMMAND", "cargo build --release"),
            artifact_dir=os.getenv("ARTIFACT_DIR") or default.artifact_dir,
            run_timeout=_get_float("RUN_TIMEOUT_SECONDS", default.run_timeout),
        )

        missing: List[str] = []
        if cfg.secret_backend not in {"env", "gcp"}:
            raise ConfigError(
                f"알 수 없는 SECRET_BACKEND 값입니다: {cfg.secret_backend!r} (env | gcp 중 하나)"
            )
        if cfg.secret_backend == "gcp" and not cfg.gcp_project_id:
            missing.append("GCP_PROJECT_ID")

        if cfg.cache_backend not in {"local", "gcs"}:
            raise ConfigError(
                f"알 수 없는 CACHE_BACKEND 값입니다: {cfg.cache_backend!r} (local | gcs 중 하나)"
            )
        if cfg.enable_cache and cfg.cache_backend == "gcs" and not cfg.cache_bucket:
            missing.append("CACHE_BUCKET")

        if cfg.run_timeout <= 0:
            raise ConfigError("RUN_TIMEOUT_SECONDS 는 0 보다 커야 합니다.")

        if missing:
            raise ConfigError(
                "필수 환경변수가 누락되었습니다: " + ", ".join(sorted(set(missing)))
            )

        return cfg

    @property
    def effective_image_tag(self) -> str:
        return self.image_tag or f"{self.binary_name}:latest"

    def require_deploy_target(self) -> tuple[str, str]:
        """
        배포 대상 (project id, service id) 를 반환한다.
        deploy 파이프라인에서만 필수이므로 from_env 가 아니라 여기서 검증한다.
        """
        missing: List[str] = []
        if not self.railway_project_id:
            missing.append("RAILWAY_PROJECT_ID")
        if not self.railway_service_id:
            missing.append("RAILWAY_SERVICE_ID")
        if missing:
            raise ConfigError(
                "배포 대상 식별자가 누락되었습니다: " + ", ".join(missing)
            )
        return self.railway_project_id or "", self.railway_service_id or ""
