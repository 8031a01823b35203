import os
import posixpath
import shlex
import socket
from typing import Callable, Sequence, Tuple

import paramiko
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_any,
    stop_when_event_set,
    wait_exponential,
)

from cloudfleet.config import Settings
from cloudfleet.database import models
from cloudfleet.database.models import PayloadStatus
from cloudfleet.database.models.enums import PAYLOAD_TRANSITIONS, can_transition
from cloudfleet.logging_config import get_logger
from cloudfleet.services.exceptions import PayloadDeploymentError
from cloudfleet.utils.context import CallContext

logger = get_logger(__name__)

# 네트워크/인증 오류만 재시도합니다. paramiko.AuthenticationException은 SSHException의 하위 클래스입니다.
RETRYABLE_SSH_ERRORS = (paramiko.SSHException, EOFError, OSError)

# (expected, new) -> 전이 성공 여부
PayloadTransition = Callable[[Sequence[PayloadStatus], PayloadStatus], bool]


class PayloadDeployer:
    """
    ready 상태의 인스턴스에 SSH로 페이로드를 복사하고 실행합니다.

    복사와 실행은 별도의 상태 전이로 기록되므로, 복사에 성공한 뒤 다시 시도하면
    복사를 건너뛰고 실행부터 진행합니다.
    """

    def __init__(self, settings: Settings, ssh_client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
                 backoff_base: float = 1.0, backoff_max: float = 30.0):
        self.settings = settings
        self.ssh_client_factory = ssh_client_factory
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    def remote_path_for(self, instance: models.Instance) -> str:
        return posixpath.join(self.settings.payload_remote_dir, os.path.basename(instance.payload_path))

    # ------------------------------------------------------------------
    # 상태 머신
    # ------------------------------------------------------------------
    def deploy(self, ctx: CallContext, instance: models.Instance, transition: PayloadTransition) -> PayloadStatus:
        """
        인스턴스의 payload_status를 진행시키며 페이로드를 배포합니다.

        Args:
            ctx: 호출 기한.
            instance: 대상 인스턴스 (public_ip, payload_path, execute_payload, payload_status 사용).
            transition: payload_status compare-and-set 함수.

        Returns:
            마지막으로 도달한 payload_status.

        Raises:
            PayloadDeploymentError: 재시도 예산을 다 쓰고도 복사/실행에 실패했을 때.
        """
        status = instance.payload_status
        remote_path = self.remote_path_for(instance)
        log = logger.bind(instance_id=instance.id, host=instance.public_ip)

        if status in (PayloadStatus.NONE, PayloadStatus.COPY_FAILED, PayloadStatus.PENDING_COPY):
            if status != PayloadStatus.PENDING_COPY:
                self._advance(transition, status, PayloadStatus.PENDING_COPY)
            try:
                self.copy(ctx, instance.public_ip, instance.payload_path, remote_path)
            except PayloadDeploymentError:
                self._move(transition, PayloadStatus.PENDING_COPY, PayloadStatus.COPY_FAILED)
                log.error("payload_copy_failed", remote_path=remote_path)
                raise
            self._advance(transition, PayloadStatus.PENDING_COPY, PayloadStatus.COPIED)
            status = PayloadStatus.COPIED
            log.info("payload_copied", remote_path=remote_path)
        else:
            log.info("payload_copy_skipped", payload_status=status.value)

        if not instance.execute_payload or status == PayloadStatus.EXECUTED:
            return status

        if status != PayloadStatus.PENDING_EXECUTION:
            self._advance(transition, status, PayloadStatus.PENDING_EXECUTION)
        try:
            self.execute(ctx, instance.public_ip, remote_path)
        except PayloadDeploymentError:
            self._move(transition, PayloadStatus.PENDING_EXECUTION, PayloadStatus.EXECUTION_FAILED)
            log.error("payload_execution_failed", remote_path=remote_path)
            raise
        self._advance(transition, PayloadStatus.PENDING_EXECUTION, PayloadStatus.EXECUTED)
        log.info("payload_executed", remote_path=remote_path)
        return PayloadStatus.EXECUTED

    @staticmethod
    def _move(transition: PayloadTransition, current: PayloadStatus, new_status: PayloadStatus) -> bool:
        if not can_transition(PAYLOAD_TRANSITIONS, current, new_status):
            raise PayloadDeploymentError(
                f"payload status cannot move from '{current.value}' to '{new_status.value}'"
            )
        return transition([current], new_status)

    @classmethod
    def _advance(cls, transition: PayloadTransition, current: PayloadStatus, new_status: PayloadStatus):
        if not cls._move(transition, current, new_status):
            raise PayloadDeploymentError(
                f"payload status could not move to '{new_status.value}'; instance is no longer ready"
            )

    # ------------------------------------------------------------------
    # SSH 작업
    # ------------------------------------------------------------------
    def _retrying(self, ctx: CallContext) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(RETRYABLE_SSH_ERRORS),
            stop=stop_any(
                stop_after_attempt(self.settings.payload_retry_attempts),
                stop_when_event_set(ctx.cancel_event),
                lambda _state: ctx.expired(),
            ),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            sleep=ctx.sleep,
            before_sleep=lambda state: logger.warning(
                "ssh_retry", attempt=state.attempt_number, error=str(state.outcome.exception())
            ),
        )

    def _key_path(self) -> str:
        path = os.path.expanduser(self.settings.ssh_private_key_path)
        if not os.path.isfile(path):
            raise PayloadDeploymentError(f"SSH private key not found at {path}")
        return path

    def _connect(self, ctx: CallContext, host: str) -> paramiko.SSHClient:
        if ctx.expired():
            raise PayloadDeploymentError(f"ssh connect to {host}: deadline exceeded")
        timeout = ctx.timeout_for(self.settings.ssh_connect_timeout)
        client = self.ssh_client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=self.settings.ssh_port,
                username=self.settings.ssh_user,
                key_filename=self._key_path(),
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except Exception:
            client.close()
            raise
        return client

    def _with_retries(self, ctx: CallContext, operation: str, fn, *args):
        if ctx.expired():
            raise PayloadDeploymentError(f"{operation}: deadline exceeded")
        try:
            return self._retrying(ctx)(fn, ctx, *args)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise PayloadDeploymentError(f"{operation} failed after retries: {last}") from last

    def copy(self, ctx: CallContext, host: str, local_path: str, remote_path: str) -> None:
        """
        SFTP로 페이로드를 복사하고 실행 권한을 부여합니다.

        Raises:
            PayloadDeploymentError: 재시도 후에도 복사에 실패했을 때.
        """
        if not host:
            raise PayloadDeploymentError("instance has no public IP")
        self._with_retries(ctx, f"copy {local_path} to {host}:{remote_path}", self._copy_once,
                           host, local_path, remote_path)

    def _copy_once(self, ctx: CallContext, host: str, local_path: str, remote_path: str) -> None:
        client = self._connect(ctx, host)
        try:
            sftp = client.open_sftp()
            try:
                sftp.put(local_path, remote_path)
                sftp.chmod(remote_path, 0o755)
            finally:
                sftp.close()
        finally:
            client.close()

    def execute(self, ctx: CallContext, host: str, remote_path: str) -> Tuple[int, str]:
        """
        복사된 페이로드를 실행합니다. 접속 단계의 오류만 재시도하고,
        실행이 시작된 뒤의 실패는 재시도하지 않습니다.

        Returns:
            (종료 코드, 표준 출력)

        Raises:
            PayloadDeploymentError: 접속 실패, 실행 시간 초과, 0이 아닌 종료 코드.
        """
        if not host:
            raise PayloadDeploymentError("instance has no public IP")
        client = self._with_retries(ctx, f"connect to {host}", self._connect, host)
        try:
            command = shlex.quote(remote_path)
            _, stdout, stderr = client.exec_command(
                command, timeout=ctx.timeout_for(self.settings.payload_exec_timeout)
            )
            output = stdout.read().decode("utf-8", errors="replace")
            errors = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (socket.timeout, paramiko.SSHException, OSError) as e:
            raise PayloadDeploymentError(f"execution of {remote_path} on {host} failed: {e}") from e
        finally:
            client.close()

        if exit_code != 0:
            raise PayloadDeploymentError(
                f"{remote_path} on {host} exited with status {exit_code}: {errors.strip()[-500:]}"
            )
        return exit_code, output
