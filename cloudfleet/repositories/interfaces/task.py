from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Dict, Any
from cloudfleet.database import models
from cloudfleet.database.models import TaskStatus, TaskAction, TaskPriority

class ITaskRepository(ABC):
    @abstractmethod
    def create_with_targets(self, task: models.Task, new_instances: Sequence[models.Instance],
                            existing_instance_ids: Sequence[int] = ()) -> models.Task:
        """
        태스크와 대상 인스턴스를 하나의 트랜잭션으로 저장합니다.

        새 인스턴스는 함께 생성되고, 기존 인스턴스는 last_task_id만 갱신됩니다.
        두 경우 모두 task_instances 연관 행이 기록됩니다.
        """
        pass

    @abstractmethod
    def find_by_id(self, task_id: int) -> Optional[models.Task]:
        """고유 ID로 태스크를 조회합니다."""
        pass

    @abstractmethod
    def list_by_project(self, project_id: int, limit: int = 100, offset: int = 0) -> List[models.Task]:
        """프로젝트의 태스크를 최신순으로 조회합니다."""
        pass

    @abstractmethod
    def list_by_instance(self, instance_id: int, action: Optional[TaskAction] = None,
                         limit: int = 20, offset: int = 0) -> List[models.Task]:
        """인스턴스를 대상으로 했던 태스크를 최신순으로 조회합니다."""
        pass

    @abstractmethod
    def get_instance_ids(self, task_id: int) -> List[int]:
        """태스크가 대상으로 하는 인스턴스 ID 목록을 조회합니다."""
        pass

    @abstractmethod
    def update_status(self, task_id: int, expected: Sequence[TaskStatus], new_status: TaskStatus,
                      fields: Optional[Dict[str, Any]] = None) -> bool:
        """현재 상태가 expected 중 하나일 때만 상태를 바꿉니다 (compare-and-set)."""
        pass

    @abstractmethod
    def update_fields(self, task_id: int, fields: Dict[str, Any]) -> None:
        """상태와 무관한 필드(result, error 등)를 기록합니다."""
        pass

    @abstractmethod
    def append_log(self, task_id: int, line: str) -> None:
        """태스크 로그에 한 줄을 덧붙입니다."""
        pass

    @abstractmethod
    def increment_attempts(self, task_id: int) -> int:
        """시도 횟수를 1 늘리고, 늘어난 값을 반환합니다."""
        pass

    @abstractmethod
    def acquire_lock(self, task_id: int, timeout_seconds: int) -> bool:
        """잠겨 있지 않거나 잠금이 만료된 태스크만 원자적으로 잠급니다."""
        pass

    @abstractmethod
    def release_lock(self, task_id: int) -> None:
        """태스크 잠금을 해제합니다."""
        pass

    @abstractmethod
    def extend_lock(self, task_id: int, timeout_seconds: int) -> bool:
        """잡고 있는 잠금의 만료 시각을 지금부터 timeout_seconds 뒤로 늦춥니다. 잠금이 없으면 False."""
        pass

    @abstractmethod
    def get_schedulable(self, priority: TaskPriority, max_attempts: int, limit: int) -> List[models.Task]:
        """
        처리 가능한 태스크를 우선순위, ID 순으로 조회합니다.
        pending/running이고, 잠겨 있지 않거나 잠금이 만료되었으며, 시도 횟수가 max_attempts를 넘지 않은 태스크입니다.
        시도 횟수를 다 쓴 태스크도 한 번 더 스케줄되어 워커가 failed로 정리합니다.
        """
        pass

    @abstractmethod
    def recover_stale(self) -> int:
        """잠금이 만료된 running 태스크의 잠금을 풀어 다시 스케줄되도록 합니다."""
        pass

    @abstractmethod
    def mark_webhook_sent(self, task_id: int) -> bool:
        """웹훅 전송 권한을 선점합니다. 이미 다른 호출이 선점했거나 전송했으면 False를 반환합니다."""
        pass

    @abstractmethod
    def clear_webhook_sent(self, task_id: int) -> None:
        """전송에 실패한 웹훅의 선점을 되돌립니다."""
        pass
