"""
secret_store
------------

파이프라인이 쓰는 secret 을 외부 저장소에서 읽어 CredentialSet 으로 만든다.

- env : 프로세스 환경변수 + .env.secrets (CI 호스트가 secret 을 env 로 주입하는 경우)
- gcp : Secret Manager 의 ``projects/<id>/secrets/<prefix><NAME>/versions/latest``
"""

from __future__ import annotations

import os
from typing import Dict, Iterable, List

from dotenv import dotenv_values
from google.api_core.exceptions import NotFound
from google.cloud import secretmanager

from .config import ConfigError, PipelineConfig
from .credentials import CredentialSet
from .logging_utils import get_logger


logger = get_logger(__name__)


def load_local_secrets_file(base_dir: str = ".", filename: str = ".env.secrets") -> Dict[str, str]:
    """
    .env.secrets 파일을 파싱하여 dict 로 반환.
    """
    path = os.path.join(base_dir, filename)
    if not os.path.exists(path):
        logger.debug(".env.secrets 파일이 없습니다: %s", path)
        return {}
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def _from_env(names: Iterable[str], base_dir: str) -> Dict[str, str]:
    local = load_local_secrets_file(base_dir)
    values: Dict[str, str] = {}
    for name in names:
        # CI 호스트가 주입한 env 가 파일보다 우선한다.
        value = os.getenv(name)
        if value is None:
            value = local.get(name)
        if value is not None:
            values[name] = value
    return values


def _from_secret_manager(cfg: PipelineConfig, names: Iterable[str]) -> Dict[str, str]:
    if not cfg.gcp_project_id:
        raise ConfigError("SECRET_BACKEND=gcp 이면 GCP_PROJECT_ID 환경변수가 필요합니다.")

    client = secretmanager.SecretManagerServiceClient()
    parent = f"projects/{cfg.gcp_project_id}"

    values: Dict[str, str] = {}
    for name in names:
        secret_id = f"{cfg.secret_prefix}{name}" if cfg.secret_prefix else name
        version_name = f"{parent}/secrets/{secret_id}/versions/latest"
        try:
            response = client.access_secret_version(name=version_name)
        except NotFound:
            logger.warning("Secret Manager 에 secret 이 없습니다: %s", secret_id)
            continue
        values[name] = response.payload.data.decode("utf-8")
        logger.info("Secret 로드: %s", secret_id)
    return values


def load_credentials(cfg: PipelineConfig, names: Iterable[str], base_dir: str = ".") -> CredentialSet:
    """
    요청한 이름 순서대로 secret 을 읽어 CredentialSet 을 반환한다.
    누락 여부 검증은 CredentialSet.require 에서 단계별로 수행한다.
    """
    ordered: List[str] = list(dict.fromkeys(names))
    logger.info("secret 로드 (backend=%s): %s", cfg.secret_backend, ", ".join(ordered))

    if cfg.secret_backend == "gcp":
        values = _from_secret_manager(cfg, ordered)
    else:
        values = _from_env(ordered, base_dir)

    return CredentialSet({name: values[name] for name in ordered if name in values})
