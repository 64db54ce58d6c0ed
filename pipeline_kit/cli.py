import signal
import sys
import threading
from typing import Any, Callable, Optional

import click

from .config import CONFIG_KEYS, PipelineConfig, load_env_files
from .errors import MissingConfiguration
from .logging_utils import get_logger, mask_secrets, setup_logging
from .pipeline import Pipeline, plan_run
from .trigger import PipelineRun, parse_trigger_kind, run_from_github_env


logger = get_logger(__name__)


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
    help="로그 레벨을 DEBUG로 올립니다.",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int) -> None:
    """Node.js 앱을 테스트/빌드하고 Docker Hub 푸시 후 Cloud Run 에 배포하는 파이프라인 CLI"""
    setup_logging(verbose)
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
    except (MissingConfiguration, ValueError) as e:
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)


_TRIGGER_OPTIONS = [
    click.option("--from-github", is_flag=True, help="GitHub Actions 환경변수(GITHUB_*)에서 트리거 정보를 읽습니다."),
    click.option("--event", "event", default=None, help="pull_request | push | manual | release (또는 GitHub 이벤트 이름)"),
    click.option("--branch", "branch", default="", help="소스 브랜치"),
    click.option("--revision", "revision", default=None, help="커밋 리비전 (이미지 태그로 사용)"),
    click.option("--release-target", "release_target", default=None, help="릴리즈 대상 브랜치 (release 이벤트)"),
    click.option("--release-action", "release_action", default=None, help="릴리즈 액션 (예: published)"),
]


def trigger_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """plan/run 공통 트리거 옵션."""
    for option in reversed(_TRIGGER_OPTIONS):
        func = option(func)
    return func


def _build_run(
    from_github: bool,
    event: Optional[str],
    branch: str,
    revision: Optional[str],
    release_target: Optional[str],
    release_action: Optional[str],
) -> PipelineRun:
    if from_github:
        return run_from_github_env()
    if not event or not revision:
        raise click.UsageError("--from-github 를 쓰지 않으면 --event 와 --revision 이 필요합니다.")
    return PipelineRun(
        trigger=parse_trigger_kind(event),
        branch=branch,
        revision=revision,
        release_target=release_target,
        release_action=release_action,
    )


def _run_or_exit(**kwargs: Any) -> PipelineRun:
    try:
        return _build_run(**kwargs)
    except ValueError as e:
        click.echo(f"[ERROR] 트리거 정보가 올바르지 않습니다: {e}", err=True)
        sys.exit(1)


@main.command()
@trigger_options
@click.pass_context
def plan(ctx: click.Context, **trigger: Any) -> None:
    """설정 요약과 이 트리거로 실행될 단계/배포 환경을 출력 (외부 호출 없음)"""
    cfg = _config_or_exit(ctx)
    run = _run_or_exit(**trigger)
    click.echo(plan_run(cfg, run))


def _install_cancel_handlers(pipeline: Pipeline) -> None:
    def _handler(signum: int, _frame: Any) -> None:
        logger.warning("시그널 수신(%s): 현재 단계 종료 후 중단합니다.", signum)
        pipeline.cancel()

    # signal 은 메인 스레드에서만 등록 가능
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)


@main.command(name="run")
@trigger_options
@click.pass_context
def run_pipeline(ctx: click.Context, **trigger: Any) -> None:
    """테스트 → 빌드 → 푸시 → (조건부) 배포를 실행"""
    cfg = _config_or_exit(ctx)
    run = _run_or_exit(**trigger)

    pipeline = Pipeline.for_run(cfg, run)
    _install_cancel_handlers(pipeline)

    try:
        result = pipeline.execute()
    except Exception as e:  # noqa: BLE001
        logger.exception("파이프라인 실행 중 예기치 않은 오류")
        click.echo(f"[ERROR] 파이프라인 실패 (stage={pipeline.state.value}): {mask_secrets(str(e))}", err=True)
        sys.exit(1)

    click.echo(result.summary())

    if not result.succeeded:
        stage = result.failed_stage.value if result.failed_stage else "unknown"
        click.echo(f"[ERROR] {result.error_kind} (stage={stage})", err=True)
        sys.exit(1)


@main.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """
    필수 설정값이 모두 있는지 점검한다. 누락된 키를 한 번에 모두 보여준다.
    (값은 출력하지 않는다)
    """
    try:
        cfg = _load_config_from_ctx(ctx)
    except MissingConfiguration as e:
        click.echo("# Config check")
        for name in e.names:
            click.echo(f"- {name}: MISSING")
        sys.exit(1)
    except ValueError as e:
        click.echo(f"[ERROR] 설정값이 올바르지 않습니다: {e}", err=True)
        sys.exit(1)

    click.echo("# Config check")
    for name, required in CONFIG_KEYS.items():
        if required:
            click.echo(f"- {name}: OK")
    click.echo(f"- secret_source: {cfg.secret_source}")


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """
    현재 디렉토리에 env 템플릿(env.pipeline.example)을 복사하는 초기화.
    """
    import os
    from importlib import resources

    base_dir: str = ctx.obj["chdir"]

    for name in ("env.pipeline.example",):
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
