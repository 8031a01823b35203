from abc import ABC, abstractmethod
from typing import List, Optional
from cloudfleet.database import models

class ISSHKeyRepository(ABC):
    @abstractmethod
    def create(self, key_model: models.SSHKey) -> models.SSHKey:
        """새로운 SSH 키를 저장합니다."""
        pass

    @abstractmethod
    def find_by_name(self, owner_id: int, name: str) -> Optional[models.SSHKey]:
        """소유자 범위 안에서 이름으로 SSH 키를 조회합니다."""
        pass

    @abstractmethod
    def list_by_owner(self, owner_id: int) -> List[models.SSHKey]:
        """소유자의 SSH 키 목록을 조회합니다."""
        pass

    @abstractmethod
    def delete(self, key: models.SSHKey) -> bool:
        """특정 SSH 키를 삭제합니다."""
        pass
