from __future__ import annotations

import os

import pytest

from pipeline_kit import deploy_pipeline as dp
from pipeline_kit.config import PipelineConfig
from pipeline_kit.credentials import CredentialSet
from pipeline_kit.stages import StepStatus
from pipeline_kit.triggers import TriggerEvent, TriggerKind


MANUAL = TriggerEvent(TriggerKind.MANUAL_DISPATCH)


def _cfg(**overrides) -> PipelineConfig:  # noqa: ANN003
    cfg = PipelineConfig(railway_project_id="P", railway_service_id="S")
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def _creds(**overrides: str) -> CredentialSet:
    values = {
        "RAILWAY_TOKEN": "railway-token-value",
        "AWS_ACCESS_KEY_ID": "AKIADEPLOYKEY",
        "AWS_SECRET_ACCESS_KEY": "deploy-secret-key",
    }
    values.update(overrides)
    return CredentialSet(values)


def _railway_calls(commands):  # noqa: ANN001, ANN202
    return [c for c in commands.calls if c.cmd[0] == "railway"]


def test_manual_deploy_links_once_configures_three_variables_then_publishes(commands, tmp_path) -> None:  # noqa: ANN001
    report = dp.DeployPipeline(_cfg(), _creds(), base_dir=str(tmp_path)).run(MANUAL)

    assert report.succeeded
    railway = [c.cmd[1:] for c in _railway_calls(commands)]
    assert railway == [
        ["link", "--service", "S", "--project", "P"],
        ["service", "S"],
        ["variables", "--service", "S", "--set", "AWS_ACCESS_KEY_ID=AKIADEPLOYKEY"],
        ["variables", "--service", "S", "--set", "AWS_SECRET_ACCESS_KEY=deploy-secret-key"],
        ["variables", "--service", "S", "--set", "AWS_DEFAULT_REGION=eu-central-1"],
        ["up", "--service=S"],
    ]
    assert "final state: deployed" in report.notes
    # checkout 은 railway 명령보다 먼저 실행된다.
    assert commands.programs()[:2] == ["git", "git"]


def test_token_is_passed_per_command_not_through_process_env(commands, tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.delenv("RAILWAY_TOKEN", raising=False)

    dp.DeployPipeline(_cfg(), _creds(), base_dir=str(tmp_path)).run(MANUAL)

    for call in _railway_calls(commands):
        assert call.env["RAILWAY_TOKEN"] == "railway-token-value"
    assert "RAILWAY_TOKEN" not in os.environ


def test_link_failure_halts_before_any_variable_or_publish(commands, tmp_path) -> None:  # noqa: ANN001
    commands.fail_when(lambda cmd: cmd[:2] == ["railway", "link"])

    report = dp.DeployPipeline(_cfg(), _creds(), base_dir=str(tmp_path)).run(MANUAL)

    assert report.failed_step.name == dp.STEP_LINK
    assert report.failed_step.kind == "deploy"
    assert [c.cmd[1] for c in _railway_calls(commands)] == ["link"]
    assert report.status_of(dp.STEP_VARIABLES) is StepStatus.SKIPPED
    assert report.status_of(dp.STEP_PUBLISH) is StepStatus.SKIPPED
    assert "final state: not-linked" in report.notes


def test_publish_failure_leaves_variables_in_place(commands, tmp_path) -> None:  # noqa: ANN001
    commands.fail_when(lambda cmd: cmd[:2] == ["railway", "up"])

    pipeline = dp.DeployPipeline(_cfg(), _creds(), base_dir=str(tmp_path))
    report = pipeline.run(MANUAL)

    assert report.failed_step.name == dp.STEP_PUBLISH
    assert pipeline.target.state is dp.DeployState.CONFIGURED
    assert any("not rolled back" in n and "AWS_DEFAULT_REGION" in n for n in report.notes)
    # 보상(삭제) 명령은 실행하지 않는다.
    assert [c.cmd[1] for c in _railway_calls(commands)].count("variables") == 3


def test_missing_target_identifier_fails_before_any_command(commands, tmp_path) -> None:  # noqa: ANN001
    report = dp.DeployPipeline(_cfg(railway_project_id=None), _creds(), base_dir=str(tmp_path)).run(MANUAL)

    assert report.failed_step.name == dp.STEP_VALIDATE
    assert report.failed_step.kind == "config"
    assert "RAILWAY_PROJECT_ID" in report.failed_step.detail
    assert commands.calls == []


def test_missing_secret_fails_before_any_command(commands, tmp_path) -> None:  # noqa: ANN001
    report = dp.DeployPipeline(_cfg(), _creds(AWS_SECRET_ACCESS_KEY=""), base_dir=str(tmp_path)).run(MANUAL)

    assert report.failed_step.name == dp.STEP_VALIDATE
    assert "AWS_SECRET_ACCESS_KEY" in report.failed_step.detail
    assert "deploy-secret-key" not in report.summary()
    assert commands.calls == []


def test_pull_request_trigger_does_not_deploy(commands, tmp_path) -> None:  # noqa: ANN001
    event = TriggerEvent(TriggerKind.PULL_REQUEST, branch="main")

    report = dp.DeployPipeline(_cfg(), _creds(), base_dir=str(tmp_path)).run(event)

    assert report.triggered is False
    assert commands.calls == []


def test_target_rejects_out_of_order_operations(commands) -> None:  # noqa: ANN001
    target = dp.RailwayTarget("P", "S", "railway-token-value")

    with pytest.raises(dp.DeployStateError):
        target.set_variable("A", "1")
    with pytest.raises(dp.DeployStateError):
        target.publish()
    assert commands.calls == []

    target.link()
    with pytest.raises(dp.DeployStateError):
        target.link()

    target.set_variable("A", "1")
    target.set_variable("A", "2")
    assert target.applied_variables == ["A"]
    assert target.state is dp.DeployState.CONFIGURED

    target.publish()
    assert target.state is dp.DeployState.DEPLOYED
    with pytest.raises(dp.DeployStateError):
        target.set_variable("B", "1")


def test_custom_variable_bindings(commands, tmp_path) -> None:  # noqa: ANN001
    from pipeline_kit.config import parse_variable_bindings

    cfg = _cfg(deploy_variables=parse_variable_bindings("DB=@DATABASE_URL,MODE=prod"))
    creds = _creds(DATABASE_URL="postgres://db")

    report = dp.DeployPipeline(cfg, creds, base_dir=str(tmp_path)).run(MANUAL)

    assert report.succeeded
    sets = [c.cmd[-1] for c in commands.matching("railway", "variables")]
    assert sets == ["DB=postgres://db", "MODE=prod"]
    assert dp.required_secrets(cfg) == ["RAILWAY_TOKEN", "DATABASE_URL"]


def test_railway_commands_only_receive_the_token(commands, tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "ambient-access-key")

    dp.DeployPipeline(_cfg(), _creds(), base_dir=str(tmp_path)).run(MANUAL)

    for call in _railway_calls(commands):
        assert call.env["RAILWAY_TOKEN"] == "railway-token-value"
        assert "AWS_ACCESS_KEY_ID" not in call.env
        assert "AWS_SECRET_ACCESS_KEY" not in call.env
    git_calls = [c for c in commands.calls if c.cmd[0] == "git"]
    assert git_calls
    for call in git_calls:
        assert "RAILWAY_TOKEN" not in call.env
        assert "AWS_ACCESS_KEY_ID" not in call.env
