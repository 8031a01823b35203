from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from cloudfleet.config import Settings
from cloudfleet.database import models
from cloudfleet.database.database import utcnow
from cloudfleet.database.models import ADMIN_ID, InstanceStatus, TaskAction, TaskPriority, TaskStatus
from cloudfleet.database.models.enums import TASK_TRANSITIONS, TERMINAL_TASK_STATUSES, can_transition, sources_for
from cloudfleet.logging_config import get_logger
from cloudfleet.repositories.interfaces import IInstanceRepository, IProjectRepository, ITaskRepository
from cloudfleet.services.exceptions import (
    InstanceNotFoundError,
    InvalidStatusTransitionError,
    ProjectNotFoundError,
    TaskNotFoundError,
    ValidationError,
)
from cloudfleet.services.serializers import task_to_dict
from cloudfleet.services.validation import parse_task_action, validate_task_payload, validate_webhook_url

logger = get_logger(__name__)

ACTION_PRIORITIES = {
    TaskAction.CREATE_INSTANCES: TaskPriority.HIGH,
    TaskAction.TERMINATE_INSTANCES: TaskPriority.LOW,
    TaskAction.DELETE_UPLOAD: TaskPriority.LOW,
}


@dataclass
class InstanceOutcome:
    """태스크 안에서 인스턴스 하나를 처리한 결과."""
    instance_id: int
    success: bool
    error: str = ""
    payload_error: str = ""
    skipped: bool = False


def aggregate_outcomes(outcomes: Sequence[InstanceOutcome]) -> Tuple[TaskStatus, str, Dict[str, Any]]:
    """
    인스턴스별 결과를 태스크의 최종 상태로 집계합니다.

    - 모두 성공: completed
    - 하나 이상 실패하고 성공이 없음: failed
    - 일부만 성공: completed + 실패한 인스턴스 ID를 나열한 error
    페이로드 실패는 인스턴스 성공으로 치되 error에 기록됩니다.

    Returns:
        (최종 상태, error 문자열, result 딕셔너리)
    """
    succeeded = [o.instance_id for o in outcomes if o.success]
    failed = [o for o in outcomes if not o.success]
    payload_failed = [o for o in outcomes if o.success and o.payload_error]

    messages = []
    if failed:
        failed_ids = ", ".join(str(o.instance_id) for o in failed)
        messages.append(f"{len(failed)} of {len(outcomes)} instances failed: [{failed_ids}]")
        messages.extend(f"instance {o.instance_id}: {o.error}" for o in failed if o.error)
    if payload_failed:
        payload_ids = ", ".join(str(o.instance_id) for o in payload_failed)
        messages.append(f"payload deployment failed on instances: [{payload_ids}]")
        messages.extend(f"instance {o.instance_id}: {o.payload_error}" for o in payload_failed)

    status = TaskStatus.FAILED if failed and not succeeded else TaskStatus.COMPLETED
    result = {
        "instance_ids": [o.instance_id for o in outcomes],
        "succeeded_instance_ids": succeeded,
        "failed_instance_ids": [o.instance_id for o in failed],
        "payload_failed_instance_ids": [o.instance_id for o in payload_failed],
    }
    return status, "; ".join(messages), result


class TaskService:
    """
    태스크 레코드의 생성, 조회, 상태 전이, 취소를 담당합니다.

    태스크 상태는 pending -> running -> {completed, failed, terminated} 순서로만 바뀌며,
    모든 전이는 리포지토리의 compare-and-set 업데이트로 수행됩니다.
    """

    def __init__(self, task_repo: ITaskRepository, project_repo: IProjectRepository,
                 instance_repo: IInstanceRepository, settings: Settings,
                 http_client: Optional[httpx.Client] = None):
        self.task_repo = task_repo
        self.project_repo = project_repo
        self.instance_repo = instance_repo
        self.settings = settings
        self.http_client = http_client

    # ------------------------------------------------------------------
    # 생성
    # ------------------------------------------------------------------
    def create_task(self, owner_id: int, project_id: int, action, payload: Dict[str, Any],
                    webhook_url: str = "", new_instances: Sequence[models.Instance] = (),
                    existing_instance_ids: Sequence[int] = ()) -> models.Task:
        """
        태스크를 pending 상태로 저장하고 즉시 반환합니다. 실제 처리는 워커가 비동기로 수행합니다.

        Args:
            owner_id: 요청자 소유자 ID.
            project_id: 태스크가 속할 프로젝트 ID.
            action: create_instances, terminate_instances, delete_upload 중 하나.
            payload: 액션별 요청 본문 (JSON).
            webhook_url: 태스크가 종료 상태가 되면 결과를 POST할 URL.
            new_instances: 태스크와 함께 생성할 pending 인스턴스.
            existing_instance_ids: 태스크가 대상으로 하는 기존 인스턴스 ID.

        Raises:
            ValidationError: 액션이나 페이로드 형태가 올바르지 않을 때.
            ProjectNotFoundError: 프로젝트가 없거나 다른 소유자의 프로젝트일 때.
        """
        task_action = parse_task_action(action)
        validate_task_payload(task_action, payload, self.settings.upload_dir)
        webhook_url = validate_webhook_url(webhook_url)
        if task_action in (TaskAction.CREATE_INSTANCES, TaskAction.TERMINATE_INSTANCES) \
                and not new_instances and not existing_instance_ids:
            raise ValidationError(f"{task_action.value} task must target at least one instance")

        project = self.project_repo.find_by_id(project_id)
        if not project or (owner_id != ADMIN_ID and project.owner_id != owner_id):
            raise ProjectNotFoundError(f"Project with id '{project_id}' not found.")

        task = models.Task(
            owner_id=project.owner_id,
            project_id=project.id,
            action=task_action,
            status=TaskStatus.PENDING,
            priority=int(ACTION_PRIORITIES[task_action]),
            payload=payload,
            webhook_url=webhook_url,
            logs=self._log_line("task accepted"),
        )
        created = self.task_repo.create_with_targets(task, new_instances, existing_instance_ids)
        logger.info("task_created", task_id=created.id, action=task_action.value,
                    project_id=project.id, owner_id=project.owner_id,
                    targets=len(new_instances) + len(existing_instance_ids))
        return created

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------
    def get(self, owner_id: int, task_id: int) -> models.Task:
        """
        소유자 범위 안에서 태스크를 조회합니다. 완료를 기다리지 않고 현재 스냅샷을 반환합니다.

        Raises:
            TaskNotFoundError: 태스크가 없거나 다른 소유자의 태스크일 때.
        """
        task = self.task_repo.find_by_id(task_id)
        if not task or (owner_id != ADMIN_ID and task.owner_id != owner_id):
            raise TaskNotFoundError(f"Task with id '{task_id}' not found.")
        return task

    def get_task(self, owner_id: int, task_id: int) -> Dict[str, Any]:
        task = self.get(owner_id, task_id)
        data = task_to_dict(task)
        data["instance_ids"] = self.task_repo.get_instance_ids(task.id)
        return data

    def list_by_project(self, owner_id: int, project_name: str,
                        limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """
        Raises:
            ProjectNotFoundError: 프로젝트가 없거나 다른 소유자의 프로젝트일 때.
        """
        project = self.project_repo.find_by_name(owner_id, project_name)
        if not project:
            raise ProjectNotFoundError(f"Project '{project_name}' not found.")
        return [task_to_dict(t) for t in self.task_repo.list_by_project(project.id, limit, offset)]

    def list_by_instance(self, owner_id: int, instance_id: int, action=None,
                         limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        """
        인스턴스를 대상으로 했던 태스크를 최신순으로 조회합니다.

        Raises:
            InstanceNotFoundError: 인스턴스가 없거나 다른 소유자의 인스턴스일 때.
            ValidationError: action 필터가 알 수 없는 값일 때.
        """
        instance = self.instance_repo.find_by_id(instance_id)
        if not instance or (owner_id != ADMIN_ID and instance.owner_id != owner_id):
            raise InstanceNotFoundError(f"Instance with id '{instance_id}' not found.")
        task_action = parse_task_action(action) if action else None
        tasks = self.task_repo.list_by_instance(instance_id, task_action, limit, offset)
        return [task_to_dict(t) for t in tasks]

    # ------------------------------------------------------------------
    # 상태 전이
    # ------------------------------------------------------------------
    def update_status(self, owner_id: int, task_id: int, status) -> models.Task:
        """
        태스크 상태를 변경합니다. 허용된 전이만 받아들입니다.

        Raises:
            ValidationError: 알 수 없는 상태 값일 때.
            TaskNotFoundError: 태스크가 없거나 다른 소유자의 태스크일 때.
            InvalidStatusTransitionError: 현재 상태에서 허용되지 않는 전이일 때.
        """
        try:
            new_status = TaskStatus(status)
        except ValueError:
            raise ValidationError(f"invalid task status: '{status}'")

        task = self.get(owner_id, task_id)
        if not can_transition(TASK_TRANSITIONS, task.status, new_status):
            raise InvalidStatusTransitionError(
                f"Task {task_id} cannot move from '{task.status.value}' to '{new_status.value}'."
            )
        if not self.task_repo.update_status(task_id, sources_for(TASK_TRANSITIONS, new_status), new_status):
            current = self.task_repo.find_by_id(task_id)
            raise InvalidStatusTransitionError(
                f"Task {task_id} changed concurrently to '{current.status.value}'."
            )
        self.append_log(task_id, f"status changed to {new_status.value}")
        if new_status in TERMINAL_TASK_STATUSES:
            self.send_webhook(task_id)
        return self.task_repo.find_by_id(task_id)

    def terminate(self, owner_id: int, task_id: int) -> models.Task:
        """
        태스크를 terminated로 만듭니다. 이미 종료 상태이면 아무것도 하지 않습니다.

        처리 중인 워커는 다음 인스턴스 작업을 시작하기 전에 이 상태를 확인하고 멈춥니다.
        이미 프로바이더에 보낸 호출은 중단하지 않습니다.

        Raises:
            TaskNotFoundError: 태스크가 없거나 다른 소유자의 태스크일 때.
        """
        task = self.get(owner_id, task_id)
        if task.status in TERMINAL_TASK_STATUSES:
            return task

        if self.task_repo.update_status(task_id, [TaskStatus.PENDING, TaskStatus.RUNNING], TaskStatus.TERMINATED,
                                        {"error": "terminated by user request"}):
            self.append_log(task_id, "terminated by user request")
            if task.action == TaskAction.CREATE_INSTANCES:
                self._discard_pending_targets(task_id)
            logger.info("task_terminated", task_id=task_id, previous_status=task.status.value)
            self.send_webhook(task_id)
        return self.task_repo.find_by_id(task_id)

    def _discard_pending_targets(self, task_id: int) -> None:
        # 아직 프로바이더에 보내지 않은 인스턴스만 정리합니다. 진행 중인 인스턴스는 워커가 마무리합니다.
        for instance_id in self.task_repo.get_instance_ids(task_id):
            self.instance_repo.update_status(instance_id, [InstanceStatus.PENDING], InstanceStatus.TERMINATED)

    def is_cancelled(self, task_id: int) -> bool:
        task = self.task_repo.find_by_id(task_id)
        return task is None or task.status == TaskStatus.TERMINATED

    def is_active(self, task_id: int) -> bool:
        task = self.task_repo.find_by_id(task_id)
        return task is not None and task.status not in TERMINAL_TASK_STATUSES

    def is_processing(self, task_id: int) -> bool:
        """워커가 태스크 잠금을 쥐고 처리 중인지 여부. terminated 직후에도 워커가 끝날 때까지 True입니다."""
        task = self.task_repo.find_by_id(task_id)
        return task is not None and task.locked_at is not None and task.lock_expiry is not None \
            and task.lock_expiry >= utcnow()

    def mark_running(self, task_id: int) -> bool:
        return self.task_repo.update_status(task_id, [TaskStatus.PENDING], TaskStatus.RUNNING)

    def fail(self, task_id: int, error: str) -> bool:
        """pending/running 태스크를 failed로 끝냅니다."""
        changed = self.task_repo.update_status(task_id, [TaskStatus.PENDING, TaskStatus.RUNNING],
                                               TaskStatus.FAILED, {"error": error})
        if changed:
            self.append_log(task_id, f"failed: {error}")
            logger.error("task_failed", task_id=task_id, error=error)
        return changed

    def complete(self, task_id: int, result: Optional[Dict[str, Any]] = None) -> bool:
        changed = self.task_repo.update_status(task_id, [TaskStatus.RUNNING], TaskStatus.COMPLETED,
                                               {"result": result})
        if changed:
            self.append_log(task_id, "completed")
        return changed

    def finalize(self, task_id: int, outcomes: Sequence[InstanceOutcome]) -> Optional[TaskStatus]:
        """
        인스턴스별 결과를 집계하여 running 태스크를 종료 상태로 만듭니다.

        Returns:
            바뀐 최종 상태. 그 사이 태스크가 terminated 되었으면 None.
        """
        status, error, result = aggregate_outcomes(outcomes)
        if not self.task_repo.update_status(task_id, [TaskStatus.RUNNING], status,
                                            {"error": error, "result": result}):
            # 처리 중에 terminate 요청을 받은 경우 결과만 남깁니다.
            self.task_repo.update_fields(task_id, {"result": result})
            return None
        self.append_log(task_id, f"{status.value}: {error}" if error else status.value)
        logger.info("task_finalized", task_id=task_id, status=status.value,
                    failed=len(result["failed_instance_ids"]), total=len(outcomes))
        return status

    # ------------------------------------------------------------------
    # 로그 및 웹훅
    # ------------------------------------------------------------------
    @staticmethod
    def _log_line(message: str) -> str:
        return f"[{utcnow().isoformat(timespec='seconds')}Z] {message}\n"

    def append_log(self, task_id: int, message: str) -> None:
        self.task_repo.append_log(task_id, self._log_line(message).rstrip("\n"))

    def send_webhook(self, task_id: int) -> bool:
        """
        종료 상태의 태스크 결과를 webhook_url로 한 번 POST합니다.

        전송 실패는 태스크 상태에 영향을 주지 않으며 태스크 로그에 기록됩니다.

        Returns:
            이번 호출에서 전송에 성공했으면 True.
        """
        task = self.task_repo.find_by_id(task_id)
        if not task or not task.webhook_url or task.webhook_sent or task.status not in TERMINAL_TASK_STATUSES:
            return False

        body: Dict[str, Any] = {"task_id": task.id, "status": task.status.value, "action": task.action.value}
        if task.error:
            body["error"] = task.error
        if task.result:
            body["result"] = task.result

        # 전송 권한을 먼저 선점합니다. 동시에 호출된 다른 쪽은 여기서 빠집니다.
        if not self.task_repo.mark_webhook_sent(task.id):
            return False

        client = self.http_client or httpx.Client()
        try:
            resp = client.post(task.webhook_url, json=body, timeout=self.settings.webhook_timeout)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            self.task_repo.clear_webhook_sent(task.id)
            logger.warning("webhook_failed", task_id=task.id, url=task.webhook_url, error=str(e))
            self.append_log(task.id, f"webhook delivery failed: {e}")
            return False
        finally:
            if client is not self.http_client:
                client.close()

        logger.info("webhook_sent", task_id=task.id, status=task.status.value)
        return True
