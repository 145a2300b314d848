from __future__ import annotations

from typing import List

from . import build_pipeline, deploy_pipeline
from .config import PipelineConfig
from .credentials import BUILD_SECRETS
from .image import ImageRecipe, check_recipe_isolation
from .logging_utils import get_logger
from .secret_store import load_credentials
from .stages import RunReport
from .triggers import TriggerEvent


logger = get_logger(__name__)

# CLI 등에서 사용할 수 있도록 파이프라인 이름을 상수로 노출
ALL_PIPELINES: List[str] = [
    build_pipeline.PIPELINE_NAME,
    deploy_pipeline.PIPELINE_NAME,
]


def _build_steps(cfg: PipelineConfig) -> List[str]:
    steps = [build_pipeline.STEP_CHECKOUT, build_pipeline.STEP_CREDENTIALS]
    if cfg.enable_cache:
        steps.append(build_pipeline.STEP_RESTORE_CACHE)
    steps += [build_pipeline.STEP_BUILD, build_pipeline.STEP_TEST]
    if cfg.enable_cache:
        steps.append(build_pipeline.STEP_SAVE_CACHE)
    return steps


def plan_all(cfg: PipelineConfig) -> str:
    """
    현재 설정으로 각 파이프라인이 어떤 단계를 어떤 순서로 실행할지
    요약 텍스트를 리턴한다. 외부 명령은 실행하지 않으며 secret 값은 출력하지 않는다.
    """
    lines: List[str] = []
    lines.append("# Pipeline plan")
    lines.append(f"- branches: {', '.join(cfg.branches)}")
    lines.append(f"- run_timeout: {cfg.run_timeout:g}s")
    lines.append(f"- secret_backend: {cfg.secret_backend}")
    lines.append("")

    lines.append(f"## {build_pipeline.PIPELINE_NAME} (pull_request)")
    for i, step in enumerate(_build_steps(cfg), start=1):
        lines.append(f"{i}. {step}")
    lines.append(f"- build: {' '.join(cfg.build_command)}")
    lines.append(f"- test: {' '.join(cfg.test_command)}")
    lines.append(f"- aws_region: {cfg.aws_region}")
    lines.append(f"- required secrets: {', '.join(BUILD_SECRETS)}")
    if cfg.enable_cache:
        lines.append(
            f"- cache: backend={cfg.cache_backend} platform={cfg.cache_platform} "
            f"namespace={cfg.cache_namespace or '(none)'}"
        )
        lines.append(f"- cache manifests: {', '.join(cfg.cache_manifests)}")
        lines.append(f"- cache paths: {', '.join(cfg.cache_paths)}")
    else:
        lines.append("- cache: DISABLED")
    lines.append("")

    lines.append(f"## {deploy_pipeline.PIPELINE_NAME} (workflow_dispatch)")
    lines.append(f"1. {deploy_pipeline.STEP_VALIDATE}")
    lines.append(f"2. {deploy_pipeline.STEP_CHECKOUT}")
    lines.append(
        f"3. {deploy_pipeline.STEP_LINK} "
        f"(project={cfg.railway_project_id or '(not set)'}, service={cfg.railway_service_id or '(not set)'})"
    )
    lines.append(f"4. {deploy_pipeline.STEP_SELECT}")
    lines.append(f"5. {deploy_pipeline.STEP_VARIABLES}")
    for b in cfg.deploy_variables:
        source = f"secret:{b.secret}" if b.secret else f"literal:{b.literal}"
        lines.append(f"   - {b.name} <- {source}")
    lines.append(f"6. {deploy_pipeline.STEP_PUBLISH}")
    lines.append(f"- required secrets: {', '.join(deploy_pipeline.required_secrets(cfg))}")
    lines.append("")

    recipe = ImageRecipe.from_config(cfg)
    lines.append("## image")
    lines.append(f"- builder: {recipe.builder_image} (+ {', '.join(recipe.build_packages) or 'no packages'})")
    lines.append(f"- runtime: {recipe.runtime_image} (+ {', '.join(recipe.runtime_packages) or 'no packages'})")
    lines.append(f"- artifact: {recipe.artifact_path}")
    lines.append(f"- tag: {cfg.effective_image_tag}")
    issues = check_recipe_isolation(recipe)
    if issues:
        for issue in issues:
            lines.append(f"- WARNING: {issue}")

    return "\n".join(lines)


def run_pipeline(name: str, cfg: PipelineConfig, event: TriggerEvent, base_dir: str = ".") -> RunReport:
    """
    파이프라인 이름에 맞게 secret 을 읽어 실행한다.
    """
    if name == build_pipeline.PIPELINE_NAME:
        credentials = load_credentials(cfg, BUILD_SECRETS, base_dir=base_dir)
        return build_pipeline.run_build_and_test(cfg, event, credentials, base_dir=base_dir)
    if name == deploy_pipeline.PIPELINE_NAME:
        credentials = load_credentials(cfg, deploy_pipeline.required_secrets(cfg), base_dir=base_dir)
        return deploy_pipeline.run_deploy(cfg, event, credentials, base_dir=base_dir)
    raise ValueError(f"알 수 없는 파이프라인입니다: {name!r} (허용: {', '.join(ALL_PIPELINES)})")
