from abc import ABC, abstractmethod
from typing import List, Optional
from cloudfleet.database import models

class IProjectRepository(ABC):
    @abstractmethod
    def create(self, project_model: models.Project) -> models.Project:
        """새로운 프로젝트를 데이터베이스에 생성합니다."""
        pass

    @abstractmethod
    def find_by_id(self, project_id: int) -> Optional[models.Project]:
        """고유 ID로 특정 프로젝트를 조회합니다."""
        pass

    @abstractmethod
    def find_by_name(self, owner_id: int, name: str) -> Optional[models.Project]:
        """
        소유자 범위 안에서 이름으로 프로젝트를 조회합니다.
        owner_id가 ADMIN_ID이면 소유자와 관계없이 이름으로 조회합니다.
        """
        pass

    @abstractmethod
    def list_by_owner(self, owner_id: int, limit: int = 100, offset: int = 0) -> List[models.Project]:
        """소유자의 프로젝트 목록을 조회합니다. ADMIN_ID이면 전체를 조회합니다."""
        pass

    @abstractmethod
    def delete(self, project: models.Project) -> bool:
        """특정 프로젝트를 데이터베이스에서 삭제합니다."""
        pass
