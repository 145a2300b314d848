from __future__ import annotations

import queue
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from textwrap import shorten
from typing import Mapping, Sequence

from .logging_utils import get_logger, redact


logger = get_logger(__name__)


class CommandError(RuntimeError):
    """
    외부 명령 실패(exit != 0, 실행 파일 없음).

    cmd 는 secret 이 가려진 문자열이고, output 은 실패 진단용 출력 요약이다.
    """

    def __init__(self, message: str, *, cmd: str, returncode: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.cmd = cmd
        self.returncode = returncode
        self.output = output


class CommandTimeout(CommandError):
    """명령 또는 run 전체의 제한 시간 초과."""


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str


def format_command(cmd: Sequence[str]) -> str:
    return redact(" ".join(cmd))


# 실패 원인(컴파일 에러 등)은 출력 끝에 있으므로 마지막 줄들을 남긴다.
DETAIL_TAIL_LINES = 50


def _detail(label: str, text: str) -> str:
    lines = redact(text.strip()).splitlines()
    if not lines:
        return ""
    if len(lines) > DETAIL_TAIL_LINES:
        omitted = len(lines) - DETAIL_TAIL_LINES
        lines = [f"... (앞부분 {omitted}줄 생략)"] + lines[-DETAIL_TAIL_LINES:]
    return f"\n{label}:\n" + "\n".join(lines)


def _not_found(cmd: Sequence[str]) -> CommandError:
    return CommandError(
        f"필요한 명령을 찾을 수 없습니다: {cmd[0]} (PATH 에 설치되어 있는지 확인하세요)",
        cmd=format_command(cmd),
    )


def _timed_out(cmd: Sequence[str], timeout: float | None) -> CommandTimeout:
    shown = format_command(cmd)
    return CommandTimeout(
        f"명령 실행이 {timeout}초 안에 끝나지 않았습니다: {shown}",
        cmd=shown,
    )


def run_command(
    cmd: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = 900.0,
    stream_output: bool = False,
) -> RunResult:
    """
    subprocess 실행 공통 유틸.

    - env 는 호출자가 명시적으로 넘긴 매핑만 사용한다(None 이면 현재 프로세스 환경 상속).
    - stream_output=False: stdout/stderr 캡처, 실패 시 요약 포함
    - stream_output=True : stdout/stderr 를 합쳐 실시간으로 터미널에 흘린다(컴파일/테스트 로그용)
    - 로그와 예외 메시지에는 등록된 secret 값이 *** 로 가려진다.
    """
    shown = format_command(cmd)
    logger.info("명령 실행: %s", shown)

    if stream_output:
        try:
            proc = subprocess.Popen(  # noqa: S603
                list(cmd),
                cwd=cwd,
                env=dict(env) if env is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise _not_found(cmd) from e

        out_lines: list[str] = []
        deadline = None if timeout is None else time.monotonic() + float(timeout)
        q: queue.Queue[str | None] = queue.Queue()

        def _reader() -> None:
            try:
                assert proc.stdout is not None
                for line in proc.stdout:
                    q.put(line)
            finally:
                q.put(None)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        try:
            while True:
                now = time.monotonic()
                if deadline is not None and now >= deadline:
                    proc.kill()
                    proc.wait()
                    raise _timed_out(cmd, timeout)

                remaining = None if deadline is None else max(deadline - now, 0.0)
                get_timeout = 0.1 if remaining is None else min(0.1, remaining)

                try:
                    item = q.get(timeout=get_timeout)
                except queue.Empty:
                    continue

                if item is None:
                    break

                out_lines.append(item)
                sys.stdout.write(redact(item))
                sys.stdout.flush()

            reader_thread.join(timeout=1.0)

            wait_timeout = None
            if deadline is not None:
                wait_timeout = max(deadline - time.monotonic(), 0.0)
            returncode = proc.wait(timeout=wait_timeout)
        except subprocess.TimeoutExpired as e:
            proc.kill()
            proc.wait()
            raise _timed_out(cmd, timeout) from e
        except BaseException:
            # 취소(KeyboardInterrupt 등) 시 자식 프로세스를 남기지 않는다.
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            raise
        finally:
            if proc.stdout is not None:
                proc.stdout.close()

        combined = "".join(out_lines)
        if returncode != 0:
            raise CommandError(
                f"명령 실행 실패: {shown} (exit={returncode}){_detail('stdout/stderr', combined)}",
                cmd=shown,
                returncode=returncode,
                output=redact(combined),
            )

        return RunResult(returncode=returncode, stdout=combined, stderr="")

    # capture 모드 (조용히 돌리고 실패 시 요약)
    try:
        result = subprocess.run(
            list(cmd),
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
        if result.stdout:
            logger.debug("명령 stdout: %s", shorten(redact(result.stdout.strip()), width=2000))
        if result.stderr:
            logger.debug("명령 stderr: %s", shorten(redact(result.stderr.strip()), width=2000))
        return RunResult(returncode=result.returncode, stdout=result.stdout or "", stderr=result.stderr or "")
    except FileNotFoundError as e:
        raise _not_found(cmd) from e
    except subprocess.TimeoutExpired as e:
        raise _timed_out(cmd, timeout) from e
    except subprocess.CalledProcessError as e:
        stdout = (e.stdout or "").strip()
        stderr = (e.stderr or "").strip()
        detail = _detail("stderr", stderr) if stderr else _detail("stdout", stdout)
        raise CommandError(
            f"명령 실행 실패: {shown} (exit={e.returncode}){detail}",
            cmd=shown,
            returncode=e.returncode,
            output=redact(stderr or stdout),
        ) from e
