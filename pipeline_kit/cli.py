import os
import signal
import sys
from typing import Optional

import click
from dotenv import dotenv_values

from .cache import CacheError, compute_cache_key
from .config import load_env_files, PipelineConfig
from .image import ImageRecipe, build_image, push_image, verify_runtime_image
from .logging_utils import setup_logging, get_logger
from .orchestrator import plan_all, run_pipeline
from .stages import RunReport
from .triggers import TriggerEvent, TriggerKind


logger = get_logger(__name__)


def _interrupt_on_sigterm(signum, frame) -> None:  # noqa: ANN001, ARG001
    # 외부 취소(SIGTERM)도 KeyboardInterrupt 로 바꿔서 with 블록 정리(임시 자격증명 삭제)가 실행되게 한다.
    raise KeyboardInterrupt(f"signal {signum}")


@click.group()
@click.option(
    "-C",
    "--chdir",
    "chdir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=".",
    help="작업 디렉토리 (기본: 현재 디렉토리)",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="로그 레벨을 DEBUG로 올립니다. (-v 가 많을수록 더 자세한 로그)",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int) -> None:
    """빌드/테스트, 배포, 컨테이너 이미지 파이프라인 실행 CLI"""
    setup_logging(verbose)
    signal.signal(signal.SIGTERM, _interrupt_on_sigterm)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = chdir
    ctx.obj["verbose"] = verbose


def _load_config_from_ctx(ctx: click.Context) -> PipelineConfig:
    base_dir: str = ctx.obj["chdir"]
    load_env_files(base_dir)
    cfg = PipelineConfig.from_env()
    logger.debug("Config loaded: %s", cfg)
    return cfg


def _config_or_exit(ctx: click.Context) -> PipelineConfig:
    try:
        return _load_config_from_ctx(ctx)
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)


def _build_env_dump(base_dir: str) -> str:
    """
    .env.pipeline 의 내용과 .env.secrets 의 키 목록을 덤프한다.
    secret 값은 출력하지 않는다.
    """
    lines: list[str] = []

    lines.append("## .env.pipeline")
    values = dotenv_values(dotenv_path=os.path.join(base_dir, ".env.pipeline"))
    if not values:
        lines.append("- (파일이 없거나 비어 있습니다)")
    else:
        for k, v in sorted(values.items()):
            if v is None:
                continue
            lines.append(f"- {k}={v}")
    lines.append("")

    lines.append("## .env.secrets (keys only)")
    secrets = dotenv_values(dotenv_path=os.path.join(base_dir, ".env.secrets"))
    if not secrets:
        lines.append("- (파일이 없거나 비어 있습니다)")
    else:
        for k, v in sorted(secrets.items()):
            state = "set" if v else "empty"
            lines.append(f"- {k} ({state})")
    return "\n".join(lines).rstrip()


def _finish(report: RunReport) -> None:
    click.echo(report.summary())
    # 실패한 단계가 있으면 전체 명령은 실패(exit 1)로 간주
    if not report.succeeded:
        sys.exit(1)


def _run_or_exit(name: str, cfg: PipelineConfig, event: TriggerEvent, base_dir: str) -> RunReport:
    try:
        return run_pipeline(name, cfg, event, base_dir=base_dir)
    except KeyboardInterrupt:
        click.echo(f"[ERROR] {name} 실행이 취소되었습니다.", err=True)
        sys.exit(130)
    except Exception as e:  # noqa: BLE001
        logger.exception("%s 실행 중 오류 발생", name)
        click.echo(f"[ERROR] {name} 실패: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option(
    "-a",
    "--all",
    "show_all",
    is_flag=True,
    help=".env.pipeline 설정값과 .env.secrets 키 목록을 함께 출력합니다.",
)
@click.pass_context
def plan(ctx: click.Context, show_all: bool) -> None:
    """현재 설정으로 각 파이프라인이 실행할 단계를 순서대로 출력"""
    cfg = _config_or_exit(ctx)

    report = plan_all(cfg)

    if show_all:
        base_dir: str = ctx.obj["chdir"]
        report = report + "\n\n" + "## Raw env from files\n" + _build_env_dump(base_dir)

    click.echo(report)


@main.command(name="build")
@click.option("--branch", default=None, help="대상 브랜치. 지정하지 않으면 GITHUB_* 환경변수에서 트리거를 읽습니다.")
@click.option("--revision", default=None, help="체크아웃할 리비전 (기본: GITHUB_SHA)")
@click.pass_context
def build(ctx: click.Context, branch: Optional[str], revision: Optional[str]) -> None:
    """pull request 빌드/테스트 파이프라인 실행"""
    cfg = _config_or_exit(ctx)
    base_dir: str = ctx.obj["chdir"]

    try:
        if branch:
            event = TriggerEvent(TriggerKind.PULL_REQUEST, branch=branch,
                                 revision=revision or os.getenv("GITHUB_SHA") or None)
        else:
            event = TriggerEvent.from_env()
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] 트리거 판별 실패: {e}", err=True)
        sys.exit(1)

    _finish(_run_or_exit("build-and-test", cfg, event, base_dir))


@main.command(name="deploy")
@click.option("--revision", default=None, help="체크아웃할 리비전 (기본: 원격 기본 브랜치 HEAD 또는 GITHUB_SHA)")
@click.pass_context
def deploy(ctx: click.Context, revision: Optional[str]) -> None:
    """수동 배포 파이프라인 실행 (link → 변수 설정 → publish)"""
    cfg = _config_or_exit(ctx)
    base_dir: str = ctx.obj["chdir"]

    event = TriggerEvent(
        TriggerKind.MANUAL_DISPATCH,
        branch=os.getenv("GITHUB_REF_NAME") or None,
        revision=revision or os.getenv("GITHUB_SHA") or None,
    )
    _finish(_run_or_exit("deploy", cfg, event, base_dir))


@main.command(name="cache-key")
@click.pass_context
def cache_key(ctx: click.Context) -> None:
    """현재 매니페스트로 계산한 캐시 키와 restore prefix 를 출력"""
    cfg = _config_or_exit(ctx)
    base_dir: str = ctx.obj["chdir"]
    try:
        key = compute_cache_key(
            cfg.cache_platform,
            cfg.cache_manifests,
            base_dir=os.path.join(base_dir, cfg.source_dir),
            namespace=cfg.cache_namespace,
        )
    except CacheError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(1)

    click.echo(f"key: {key.key}")
    for prefix in key.restore_prefixes:
        click.echo(f"restore-prefix: {prefix}")


@main.group()
def image() -> None:
    """2단계 컨테이너 이미지 레시피"""


@image.command(name="render")
@click.option("-o", "--output", "output", type=click.Path(dir_okay=False), default=None,
              help="Dockerfile 을 저장할 경로 (기본: stdout)")
@click.pass_context
def image_render(ctx: click.Context, output: Optional[str]) -> None:
    """설정으로 Dockerfile 을 생성"""
    cfg = _config_or_exit(ctx)
    recipe = ImageRecipe.from_config(cfg)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(recipe.render_dockerfile())
        click.echo(f"{output} 을(를) 생성했습니다.")
    else:
        click.echo(recipe.render_dockerfile(), nl=False)


@image.command(name="build")
@click.option("--tag", default=None, help="이미지 태그 (기본: IMAGE_TAG 또는 <BINARY_NAME>:latest)")
@click.option("--push", is_flag=True, help="빌드 후 레지스트리에 push 합니다.")
@click.option("--verify/--no-verify", default=True, help="빌드된 이미지의 격리 상태를 확인합니다.")
@click.pass_context
def image_build(ctx: click.Context, tag: Optional[str], push: bool, verify: bool) -> None:
    """이미지를 빌드(및 push)"""
    cfg = _config_or_exit(ctx)
    base_dir: str = ctx.obj["chdir"]
    recipe = ImageRecipe.from_config(cfg)
    tag = tag or cfg.effective_image_tag

    try:
        build_image(recipe, tag, context_dir=os.path.join(base_dir, cfg.source_dir))
        if verify:
            issues = verify_runtime_image(tag, recipe)
            if issues:
                for issue in issues:
                    click.echo(f"[ERROR] {issue}", err=True)
                sys.exit(1)
        if push:
            push_image(tag)
    except Exception as e:  # noqa: BLE001
        logger.exception("이미지 빌드 중 오류 발생")
        click.echo(f"[ERROR] 이미지 빌드 실패: {e}", err=True)
        sys.exit(1)

    click.echo(tag)


@image.command(name="verify")
@click.option("--tag", default=None, help="확인할 이미지 태그")
@click.pass_context
def image_verify(ctx: click.Context, tag: Optional[str]) -> None:
    """runtime 이미지에 툴체인/소스가 남아 있지 않은지 확인"""
    cfg = _config_or_exit(ctx)
    recipe = ImageRecipe.from_config(cfg)
    tag = tag or cfg.effective_image_tag

    try:
        issues = verify_runtime_image(tag, recipe)
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] 이미지 확인 실패: {e}", err=True)
        sys.exit(1)

    if issues:
        for issue in issues:
            click.echo(f"- {issue}")
        sys.exit(1)
    click.echo(f"{tag}: OK")


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """
    현재 디렉토리에 env 템플릿(env.pipeline.example, env.secrets.example)을 복사하는 초기화.
    """
    from importlib import resources

    base_dir: str = ctx.obj["chdir"]

    for name in ("env.pipeline.example", "env.secrets.example"):
        target = os.path.join(base_dir, name)
        if os.path.exists(target):
            click.echo(f"{name} 이(가) 이미 존재하여 건너뜀")
            continue
        try:
            with resources.files("pipeline_kit.examples").joinpath(name).open("r", encoding="utf-8") as src, open(
                target, "w", encoding="utf-8"
            ) as dst:
                dst.write(src.read())
            click.echo(f"{name} 템플릿을 생성했습니다.")
        except FileNotFoundError:
            click.echo(f"템플릿 {name} 을(를) 패키지에서 찾을 수 없습니다.", err=True)
