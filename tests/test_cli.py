from __future__ import annotations

import os
from pathlib import Path

import pytest
from click.testing import CliRunner

from pipeline_kit.cache import compute_cache_key
from pipeline_kit.cli import main


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def deploy_env(clean_env: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    clean_env.setenv("CHECKOUT", "false")
    clean_env.setenv("RAILWAY_PROJECT_ID", "P")
    clean_env.setenv("RAILWAY_SERVICE_ID", "S")
    clean_env.setenv("RAILWAY_TOKEN", "railway-cli-token")
    clean_env.setenv("AWS_ACCESS_KEY_ID", "AKIACLIKEY")
    clean_env.setenv("AWS_SECRET_ACCESS_KEY", "cli-secret-access-key")
    return clean_env


def test_plan_lists_steps_without_secret_values(runner, deploy_env, tmp_path: Path) -> None:  # noqa: ANN001
    result = runner.invoke(main, ["-C", str(tmp_path), "plan"])

    assert result.exit_code == 0, result.output
    assert "# Pipeline plan" in result.output
    assert "## build-and-test (pull_request)" in result.output
    assert "## deploy (workflow_dispatch)" in result.output
    assert "project=P, service=S" in result.output
    assert "railway-cli-token" not in result.output
    assert "cli-secret-access-key" not in result.output


def test_plan_all_shows_secret_names_only(runner, deploy_env, tmp_path: Path) -> None:  # noqa: ANN001
    (tmp_path / ".env.secrets").write_text("RAILWAY_TOKEN=file-railway-token\n", encoding="utf-8")

    result = runner.invoke(main, ["-C", str(tmp_path), "plan", "-a"])

    assert result.exit_code == 0, result.output
    assert "## .env.secrets (keys only)" in result.output
    assert "- RAILWAY_TOKEN (set)" in result.output
    assert "file-railway-token" not in result.output


def test_invalid_config_exits_with_error(runner, clean_env, tmp_path: Path) -> None:  # noqa: ANN001
    clean_env.setenv("SECRET_BACKEND", "vault")

    result = runner.invoke(main, ["-C", str(tmp_path), "plan"])

    assert result.exit_code == 1
    assert "SECRET_BACKEND" in result.output


def test_cache_key_prints_key_and_prefixes(runner, clean_env, tmp_path: Path) -> None:  # noqa: ANN001
    (tmp_path / "Cargo.toml").write_text('[package]\nname = "app"\n', encoding="utf-8")
    (tmp_path / "Cargo.lock").write_text("# lock\n", encoding="utf-8")
    clean_env.setenv("CACHE_PLATFORM", "linux")

    result = runner.invoke(main, ["-C", str(tmp_path), "cache-key"])

    expected = compute_cache_key("linux", ["**/Cargo.toml", "**/Cargo.lock"], str(tmp_path), namespace="cargo")
    assert result.exit_code == 0, result.output
    assert f"key: {expected.key}" in result.output
    for prefix in expected.restore_prefixes:
        assert f"restore-prefix: {prefix}" in result.output


def test_cache_key_without_manifests_fails(runner, clean_env, tmp_path: Path) -> None:  # noqa: ANN001
    result = runner.invoke(main, ["-C", str(tmp_path), "cache-key"])

    assert result.exit_code == 1


def test_image_render_writes_two_stage_dockerfile(runner, clean_env, tmp_path: Path) -> None:  # noqa: ANN001
    clean_env.setenv("BINARY_NAME", "my-rust-app")
    output = tmp_path / "Dockerfile"

    result = runner.invoke(main, ["-C", str(tmp_path), "image", "render", "-o", str(output)])

    assert result.exit_code == 0, result.output
    dockerfile = output.read_text(encoding="utf-8")
    assert " AS builder" in dockerfile
    assert "COPY --from=builder /app/target/release/my-rust-app ./my-rust-app" in dockerfile
    assert dockerfile.rstrip().endswith('ENTRYPOINT ["./my-rust-app"]')


def test_init_copies_templates_once(runner, clean_env, tmp_path: Path) -> None:  # noqa: ANN001
    first = runner.invoke(main, ["-C", str(tmp_path), "init"])
    second = runner.invoke(main, ["-C", str(tmp_path), "init"])

    assert first.exit_code == 0, first.output
    assert (tmp_path / "env.pipeline.example").exists()
    assert (tmp_path / "env.secrets.example").exists()
    assert "이미 존재하여 건너뜀" in second.output


def test_deploy_command_runs_railway_sequence(runner, commands, deploy_env, tmp_path: Path) -> None:  # noqa: ANN001
    result = runner.invoke(main, ["-C", str(tmp_path), "deploy"])

    assert result.exit_code == 0, result.output
    assert "- result: SUCCESS" in result.output
    assert [c.cmd[1] for c in commands.calls] == ["link", "service", "variables", "variables", "variables", "up"]
    assert all(c.env["RAILWAY_TOKEN"] == "railway-cli-token" for c in commands.calls)
    assert "cli-secret-access-key" not in result.output


def test_deploy_command_fails_without_service_id(runner, commands, deploy_env, tmp_path: Path) -> None:  # noqa: ANN001
    deploy_env.delenv("RAILWAY_SERVICE_ID")

    result = runner.invoke(main, ["-C", str(tmp_path), "deploy"])

    assert result.exit_code == 1
    assert "FAILED (step=validate-config" in result.output
    assert "RAILWAY_SERVICE_ID" in result.output
    assert commands.calls == []


def test_build_command_on_other_branch_is_not_triggered(runner, commands, clean_env, tmp_path: Path) -> None:  # noqa: ANN001
    result = runner.invoke(main, ["-C", str(tmp_path), "build", "--branch", "feature/x"])

    assert result.exit_code == 0, result.output
    assert "- result: NOT TRIGGERED" in result.output
    assert commands.calls == []


def test_build_commands_never_see_pipeline_secrets(runner, commands, clean_env, tmp_path: Path) -> None:  # noqa: ANN001
    (tmp_path / "Cargo.toml").write_text('[package]\nname = "app"\n', encoding="utf-8")
    (tmp_path / ".env.secrets").write_text(
        "AWS_ACCESS_KEY_ID=AKIAFILEKEY\n"
        "AWS_SECRET_ACCESS_KEY=file-secret-access-key\n"
        "RAILWAY_TOKEN=file-railway-token\n",
        encoding="utf-8",
    )
    clean_env.setenv("ENABLE_CACHE", "false")

    result = runner.invoke(main, ["-C", str(tmp_path), "build", "--branch", "main"])

    assert result.exit_code == 0, result.output
    assert "RAILWAY_TOKEN" not in os.environ
    assert "AWS_SECRET_ACCESS_KEY" not in os.environ

    scrubbed = commands.matching("git") + commands.matching("cargo")
    assert [c.cmd[:2] for c in scrubbed] == [
        ["git", "fetch"],
        ["git", "checkout"],
        ["cargo", "build"],
        ["cargo", "test"],
    ]
    for call in scrubbed:
        assert call.env is not None
        for name in ("RAILWAY_TOKEN", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY"):
            assert name not in call.env
        assert "file-railway-token" not in call.env.values()
    # aws configure 에는 값이 인자로만 전달된다.
    assert [c.cmd[4] for c in commands.matching("aws", "configure")][:2] == [
        "AKIAFILEKEY",
        "file-secret-access-key",
    ]
