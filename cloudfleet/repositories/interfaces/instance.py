from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Dict, Any
from cloudfleet.database import models
from cloudfleet.database.models import InstanceStatus, PayloadStatus

class IInstanceRepository(ABC):
    @abstractmethod
    def find_by_id(self, instance_id: int) -> Optional[models.Instance]:
        """고유 ID로 인스턴스를 조회합니다."""
        pass

    @abstractmethod
    def find_by_ids(self, instance_ids: Sequence[int]) -> List[models.Instance]:
        """여러 ID의 인스턴스를 ID 순서대로 조회합니다."""
        pass

    @abstractmethod
    def find_active_by_name(self, project_id: int, name: str) -> Optional[models.Instance]:
        """프로젝트 안에서 종료되지 않은 인스턴스를 이름으로 조회합니다."""
        pass

    @abstractmethod
    def list_by_owner(self, owner_id: int, include_terminated: bool = False,
                      limit: int = 100, offset: int = 0) -> List[models.Instance]:
        """소유자의 인스턴스 목록을 조회합니다. ADMIN_ID이면 전체를 조회합니다."""
        pass

    @abstractmethod
    def list_by_project(self, project_id: int, include_terminated: bool = False) -> List[models.Instance]:
        """프로젝트에 속한 인스턴스 목록을 조회합니다."""
        pass

    @abstractmethod
    def count_active_by_project(self, project_id: int) -> int:
        """프로젝트에 속한 종료되지 않은 인스턴스 수를 조회합니다."""
        pass

    @abstractmethod
    def update_status(self, instance_id: int, expected: Sequence[InstanceStatus],
                      new_status: InstanceStatus, fields: Optional[Dict[str, Any]] = None) -> bool:
        """
        현재 상태가 expected 중 하나일 때만 상태를 new_status로 바꿉니다 (compare-and-set).

        Args:
            instance_id: 대상 인스턴스 ID.
            expected: 전이를 허용할 현재 상태 목록.
            new_status: 바꿀 상태.
            fields: 상태와 함께 원자적으로 기록할 추가 필드.

        Returns:
            한 행이 변경되었으면 True, 현재 상태가 달라 변경하지 못했으면 False.
        """
        pass

    @abstractmethod
    def update_payload_status(self, instance_id: int, expected: Sequence[PayloadStatus],
                              new_status: PayloadStatus) -> bool:
        """
        인스턴스가 ready이고 payload_status가 expected 중 하나일 때만 바꿉니다.
        """
        pass

    @abstractmethod
    def update_fields(self, instance_id: int, fields: Dict[str, Any]) -> None:
        """상태와 무관한 필드(provider_instance_id, public_ip 등)를 기록합니다."""
        pass

    @abstractmethod
    def claim(self, instance_ids: Sequence[int], task_id: int) -> bool:
        """
        태스크가 인스턴스들을 변경할 권한을 한 번에 획득합니다.

        다른 태스크가 하나라도 잡고 있으면 아무것도 잡지 않고 False를 반환합니다.
        점유한 태스크의 잠금(locked_at/lock_expiry)이 풀렸거나 만료된 경우에만 가져올 수 있습니다.
        태스크가 terminated가 되어도 워커가 작업을 마치고 release할 때까지 점유는 유지됩니다.
        """
        pass

    @abstractmethod
    def release(self, instance_ids: Sequence[int], task_id: int) -> None:
        """태스크가 잡고 있던 인스턴스 잠금을 해제합니다."""
        pass
