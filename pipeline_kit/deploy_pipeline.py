"""
deploy_pipeline
---------------

수동 실행(workflow_dispatch) 배포 파이프라인. Railway CLI 를 블랙박스로 호출한다.

checkout → link → select-service → set-variables → publish

상태: NOT_LINKED → LINKED → CONFIGURED → DEPLOYED
link 이후의 모든 명령은 link 에서 확정된 (project, service) 에만 적용된다.
publish 실패 시 이미 설정된 변수는 되돌리지 않는다(보상 단계 없음).
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Dict, List, Mapping, Optional

from .checkout import checkout_source
from .config import PipelineConfig, VariableBinding
from .credentials import RAILWAY_TOKEN, CredentialSet, isolated_env
from .logging_utils import get_logger
from .stages import RunDeadline, RunReport, StageRunner, Step
from .subprocess_utils import run_command
from .triggers import TriggerEvent, TriggerKind


logger = get_logger(__name__)

PIPELINE_NAME = "deploy"

STEP_VALIDATE = "validate-config"
STEP_CHECKOUT = "checkout"
STEP_LINK = "link"
STEP_SELECT = "select-service"
STEP_VARIABLES = "set-variables"
STEP_PUBLISH = "publish"


class DeployState(str, Enum):
    NOT_LINKED = "not-linked"
    LINKED = "linked"
    CONFIGURED = "configured"
    DEPLOYED = "deployed"


class DeployStateError(RuntimeError):
    """link 전에 변수 설정/배포를 시도하는 등 순서가 맞지 않는 호출."""


def _run(
    cmd: list[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    stream_output: bool = False,
) -> None:
    run_command(cmd, cwd=cwd, env=env, timeout=timeout, stream_output=stream_output)


class RailwayTarget:
    """
    (project id, service id) 로 식별되는 배포 대상.
    토큰은 명령마다 명시적으로 넘기는 env 에만 들어가고 os.environ 에는 쓰지 않는다.
    """

    def __init__(
        self,
        project_id: str,
        service_id: str,
        token: str,
        *,
        cwd: str = ".",
        deadline: Optional[RunDeadline] = None,
        credentials: Optional[CredentialSet] = None,
    ) -> None:
        self.project_id = project_id
        self.service_id = service_id
        self.cwd = cwd
        self.deadline = deadline or RunDeadline(None)
        self.state = DeployState.NOT_LINKED
        self.applied_variables: List[str] = []
        # 토큰 외의 파이프라인 secret 은 railway 명령 환경에서 지운다.
        self._tool_env = isolated_env(credentials, values={RAILWAY_TOKEN: token})

    def _railway(self, *args: str, stream_output: bool = False) -> None:
        _run(
            ["railway", *args],
            cwd=self.cwd,
            env=self._tool_env.merged(),
            timeout=self.deadline.command_timeout(),
            stream_output=stream_output,
        )

    def _require_linked(self, action: str) -> None:
        if self.state is DeployState.NOT_LINKED:
            raise DeployStateError(f"link 전에 {action} 를 실행할 수 없습니다.")
        if self.state is DeployState.DEPLOYED:
            raise DeployStateError(f"이미 배포가 끝난 대상에는 {action} 를 실행할 수 없습니다.")

    def link(self) -> None:
        if self.state is not DeployState.NOT_LINKED:
            raise DeployStateError("배포 대상은 run 당 한 번만 link 할 수 있습니다.")
        logger.info("Railway link: project=%s service=%s", self.project_id, self.service_id)
        self._railway("link", "--service", self.service_id, "--project", self.project_id)
        self.state = DeployState.LINKED

    def select_service(self) -> None:
        self._require_linked("select-service")
        self._railway("service", self.service_id)

    def set_variable(self, name: str, value: str) -> None:
        """같은 이름으로 여러 번 호출해도 마지막 값만 남는다."""
        self._require_linked("set-variable")
        logger.info("Railway 변수 설정: %s (service=%s)", name, self.service_id)
        self._railway("variables", "--service", self.service_id, "--set", f"{name}={value}")
        if name not in self.applied_variables:
            self.applied_variables.append(name)
        self.state = DeployState.CONFIGURED

    def publish(self) -> None:
        self._require_linked("publish")
        logger.info("Railway 배포: service=%s", self.service_id)
        self._railway("up", f"--service={self.service_id}", stream_output=True)
        self.state = DeployState.DEPLOYED


def resolve_variables(bindings: List[VariableBinding], credentials: CredentialSet) -> Dict[str, str]:
    """
    바인딩을 실제 값으로 바꾼다. secret 누락은 외부 명령 실행 전에 ConfigError 로 드러난다.
    """
    credentials.require(b.secret for b in bindings if b.secret)
    values: Dict[str, str] = {}
    for binding in bindings:
        if binding.secret:
            values[binding.name] = credentials[binding.secret]
        else:
            values[binding.name] = binding.literal or ""
    return values


def required_secrets(cfg: PipelineConfig) -> List[str]:
    names = [RAILWAY_TOKEN]
    names += [b.secret for b in cfg.deploy_variables if b.secret]
    return list(dict.fromkeys(names))


class DeployPipeline:
    def __init__(
        self,
        cfg: PipelineConfig,
        credentials: CredentialSet,
        *,
        base_dir: str = ".",
        deadline: Optional[RunDeadline] = None,
    ) -> None:
        self.cfg = cfg
        self.credentials = credentials
        self.base_dir = base_dir
        self.deadline = deadline or RunDeadline(cfg.run_timeout)
        self.target: Optional[RailwayTarget] = None
        self._variables: Dict[str, str] = {}

    @property
    def source_dir(self) -> str:
        return os.path.join(self.base_dir, self.cfg.source_dir)

    def _prepare(self) -> tuple[RailwayTarget, Dict[str, str]]:
        """배포 대상과 변수 값을 확정한다. 외부 명령은 실행하지 않는다."""
        project_id, service_id = self.cfg.require_deploy_target()
        self.credentials.require([RAILWAY_TOKEN])
        variables = resolve_variables(self.cfg.deploy_variables, self.credentials)
        target = RailwayTarget(
            project_id,
            service_id,
            self.credentials[RAILWAY_TOKEN],
            cwd=self.source_dir,
            deadline=self.deadline,
            credentials=self.credentials,
        )
        return target, variables

    def validate(self) -> None:
        self.target, self._variables = self._prepare()

    def _linked_target(self) -> RailwayTarget:
        if self.target is None:
            raise DeployStateError("배포 대상이 확정되지 않았습니다.")
        return self.target

    def set_variables(self) -> None:
        target = self._linked_target()
        for name, value in self._variables.items():
            target.set_variable(name, value)

    def steps(self, event: TriggerEvent) -> List[Step]:
        return [
            Step(STEP_VALIDATE, self.validate, kind="config"),
            Step(
                STEP_CHECKOUT,
                lambda: checkout_source(
                    self.cfg,
                    event.revision,
                    cwd=self.source_dir,
                    env=isolated_env(self.credentials).merged(),
                    timeout=self.deadline.command_timeout(),
                ),
            ),
            Step(STEP_LINK, lambda: self._linked_target().link(), kind="deploy"),
            Step(STEP_SELECT, lambda: self._linked_target().select_service(), kind="deploy"),
            Step(STEP_VARIABLES, self.set_variables, kind="deploy"),
            Step(STEP_PUBLISH, lambda: self._linked_target().publish(), kind="deploy"),
        ]

    def run(self, event: TriggerEvent) -> RunReport:
        if event.kind is not TriggerKind.MANUAL_DISPATCH:
            logger.info("deploy 파이프라인은 수동 실행에서만 동작합니다: kind=%s", event.kind.value)
            return RunReport(
                pipeline=PIPELINE_NAME,
                triggered=False,
                notes=[f"trigger {event.kind.value} is not a manual dispatch"],
            )

        report = StageRunner(PIPELINE_NAME, self.deadline).run(self.steps(event))

        target = self.target
        if target is not None:
            report.notes.append(f"target: project={target.project_id} service={target.service_id}")
            report.notes.append(f"final state: {target.state.value}")
            if not report.succeeded and target.applied_variables:
                report.notes.append(
                    "variables already applied (not rolled back): " + ", ".join(target.applied_variables)
                )
        return report


def run_deploy(
    cfg: PipelineConfig,
    event: TriggerEvent,
    credentials: CredentialSet,
    *,
    base_dir: str = ".",
) -> RunReport:
    return DeployPipeline(cfg, credentials, base_dir=base_dir).run(event)
