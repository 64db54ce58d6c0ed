from typing import Dict

import pytest
from click.testing import CliRunner

from pipeline_kit import cli
from pipeline_kit.config import CONFIG_KEYS
from pipeline_kit.errors import TestsFailed
from pipeline_kit.pipeline import PipelineResult, PipelineState


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # load_dotenv 가 os.environ 을 직접 바꾸므로 테스트 후 원상복구되도록 먼저 기록해 둔다.
    for key in CONFIG_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.setattr(cli, "setup_logging", lambda verbosity: None)


def _set_env(monkeypatch: pytest.MonkeyPatch, env: Dict[str, str]) -> None:
    for key, value in env.items():
        monkeypatch.setenv(key, value)


def test_check_lists_all_missing_keys(tmp_path) -> None:
    result = CliRunner().invoke(cli.main, ["-C", str(tmp_path), "check"])

    assert result.exit_code == 1
    for key, required in CONFIG_KEYS.items():
        if required:
            assert f"- {key}: MISSING" in result.output


def test_check_passes_with_full_env(tmp_path, monkeypatch: pytest.MonkeyPatch, env: Dict[str, str]) -> None:
    _set_env(monkeypatch, env)

    result = CliRunner().invoke(cli.main, ["-C", str(tmp_path), "check"])

    assert result.exit_code == 0
    assert "- REGISTRY_PASSWORD: OK" in result.output
    assert env["REGISTRY_PASSWORD"] not in result.output


def test_plan_reads_env_files_and_masks_secrets(tmp_path, env: Dict[str, str]) -> None:
    lines = [f"{k}='{v}'" for k, v in env.items()]
    (tmp_path / ".env.pipeline").write_text("\n".join(lines) + "\n", encoding="utf-8")

    result = CliRunner().invoke(
        cli.main,
        ["-C", str(tmp_path), "plan", "--event", "push", "--branch", "develop", "--revision", "3f2a9c1"],
    )

    assert result.exit_code == 0, result.output
    assert "deploying: ENABLED -> staging:shop-api-staging@asia-northeast3" in result.output
    assert env["REGISTRY_PASSWORD"] not in result.output


def test_plan_requires_event_and_revision(tmp_path, monkeypatch: pytest.MonkeyPatch, env: Dict[str, str]) -> None:
    _set_env(monkeypatch, env)

    result = CliRunner().invoke(cli.main, ["-C", str(tmp_path), "plan", "--branch", "develop"])

    assert result.exit_code == 2


def test_run_reports_error_kind_and_stage(tmp_path, monkeypatch: pytest.MonkeyPatch, env: Dict[str, str]) -> None:
    _set_env(monkeypatch, env)

    class FailingPipeline:
        state = PipelineState.FAILED

        def __init__(self, cfg, run) -> None:  # noqa: ANN001
            self.run = run

        def cancel(self) -> None:
            pass

        def execute(self) -> PipelineResult:
            return PipelineResult(
                run=self.run,
                state=PipelineState.FAILED,
                history=[PipelineState.PENDING, PipelineState.TESTING, PipelineState.FAILED],
                failed_stage=PipelineState.TESTING,
                error=TestsFailed("1 failing", 1),
            )

    monkeypatch.setattr(cli.Pipeline, "for_run", classmethod(lambda _cls, cfg, run: FailingPipeline(cfg, run)))
    monkeypatch.setattr(cli, "_install_cancel_handlers", lambda pipeline: None)

    result = CliRunner().invoke(
        cli.main,
        ["-C", str(tmp_path), "run", "--event", "push", "--branch", "develop", "--revision", "3f2a9c1"],
    )

    assert result.exit_code == 1
    assert "- stage: testing" in result.output
    assert "[ERROR] TestsFailed (stage=testing)" in result.output


def test_init_copies_env_template(tmp_path) -> None:
    result = CliRunner().invoke(cli.main, ["-C", str(tmp_path), "init"])

    assert result.exit_code == 0
    assert (tmp_path / "env.pipeline.example").exists()
    assert "IMAGE_NAMESPACE=" in (tmp_path / "env.pipeline.example").read_text(encoding="utf-8")


def test_run_rejects_revision_that_is_not_a_docker_tag(
    tmp_path, monkeypatch: pytest.MonkeyPatch, env: Dict[str, str]
) -> None:
    _set_env(monkeypatch, env)
    built = []
    monkeypatch.setattr(cli.Pipeline, "for_run", classmethod(lambda _cls, cfg, run: built.append(run)))

    result = CliRunner().invoke(
        cli.main,
        ["-C", str(tmp_path), "run", "--event", "push", "--branch", "develop", "--revision", "feature/x"],
    )

    assert result.exit_code == 1
    assert "docker 태그" in result.output
    assert built == []
