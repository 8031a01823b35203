from typing import Dict, Any, List, Optional

from sqlalchemy.exc import IntegrityError

from cloudfleet.database import models
from cloudfleet.database.models import ADMIN_ID, UserRole
from cloudfleet.logging_config import get_logger
from cloudfleet.repositories.interfaces import (
    IProjectRepository, IUserRepository, ISSHKeyRepository, IInstanceRepository
)
from cloudfleet.services.exceptions import (
    ConflictError, ProjectNotEmptyError, ProjectNotFoundError,
    UserNotFoundError, SSHKeyNotFoundError, ValidationError
)
from cloudfleet.services.serializers import project_to_dict, user_to_dict, ssh_key_to_dict, instance_to_dict
from cloudfleet.services.validation import validate_project_name, validate_ssh_key, validate_user

logger = get_logger(__name__)


class IdentityService:
    """프로젝트, 사용자, SSH 키 등 소유자 범위의 리소스를 관리하는 서비스를 제공합니다."""

    def __init__(self, user_repo: IUserRepository, project_repo: IProjectRepository,
                 ssh_key_repo: ISSHKeyRepository, instance_repo: IInstanceRepository):
        """
        IdentityService를 초기화합니다.

        Args:
            user_repo: 사용자 데이터에 접근하기 위한 리포지토리.
            project_repo: 프로젝트 데이터에 접근하기 위한 리포지토리.
            ssh_key_repo: SSH 키 데이터에 접근하기 위한 리포지토리.
            instance_repo: 인스턴스 데이터에 접근하기 위한 리포지토리 (프로젝트 삭제 시 검증용).
        """
        self.user_repo = user_repo
        self.project_repo = project_repo
        self.ssh_key_repo = ssh_key_repo
        self.instance_repo = instance_repo

    # ------------------------------------------------------------------
    # 소유자 식별
    # ------------------------------------------------------------------
    def resolve_owner_id(self, user_id: Optional[int]) -> int:
        """
        요청자 ID를 소유자 범위 ID로 변환합니다. admin 역할 사용자는 ADMIN_ID가 됩니다.

        Raises:
            ValidationError: 요청자 ID가 없거나 예약된 값일 때.
            UserNotFoundError: 해당 ID의 사용자가 없을 때.
        """
        if user_id is None:
            raise ValidationError("owner id is required")
        if user_id == ADMIN_ID:
            return ADMIN_ID
        if user_id == 0:
            raise ValidationError("owner id 0 is reserved")
        user = self.user_repo.find_by_id(user_id)
        if not user:
            raise UserNotFoundError(f"User with id '{user_id}' not found.")
        return ADMIN_ID if user.role == UserRole.ADMIN else user.id

    # ------------------------------------------------------------------
    # 프로젝트
    # ------------------------------------------------------------------
    def create_project(self, owner_id: int, name: str, description: str = "",
                       config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        새로운 프로젝트를 생성합니다.

        Args:
            owner_id: 프로젝트 소유자 ID.
            name: 생성할 프로젝트의 이름. 소유자 안에서 고유해야 합니다.
            description: 프로젝트 설명.
            config: 프로젝트 단위 설정 (JSON).

        Returns:
            생성된 프로젝트 정보를 담은 딕셔너리.

        Raises:
            ValidationError: 이름이 비어 있을 때.
            ConflictError: 같은 소유자에게 동일한 이름의 프로젝트가 이미 존재할 때.
        """
        name = validate_project_name(name)
        if config is not None and not isinstance(config, dict):
            raise ValidationError("project config must be an object")
        if self.project_repo.find_by_name(owner_id, name):
            raise ConflictError(f"Project with name '{name}' already exists.")
        try:
            created = self.project_repo.create(models.Project(
                owner_id=owner_id, name=name, description=description or "", config=config or {}
            ))
        except IntegrityError as e:
            raise ConflictError(f"Project with name '{name}' already exists.") from e
        logger.info("project_created", project_id=created.id, owner_id=owner_id, name=name)
        return project_to_dict(created)

    def get_project_model(self, owner_id: int, name: str) -> models.Project:
        """
        소유자 범위 안에서 이름으로 프로젝트를 조회합니다.

        Raises:
            ProjectNotFoundError: 프로젝트가 없거나 다른 소유자의 프로젝트일 때.
        """
        project = self.project_repo.find_by_name(owner_id, name)
        if not project:
            raise ProjectNotFoundError(f"Project '{name}' not found.")
        return project

    def get_project(self, owner_id: int, name: str) -> Dict[str, Any]:
        return project_to_dict(self.get_project_model(owner_id, name))

    def list_projects(self, owner_id: int, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """소유자의 프로젝트 목록을 조회합니다."""
        return [project_to_dict(p) for p in self.project_repo.list_by_owner(owner_id, limit, offset)]

    def delete_project(self, owner_id: int, name: str) -> bool:
        """
        프로젝트를 삭제합니다. 종료되지 않은 인스턴스가 없는 프로젝트만 삭제 가능합니다.

        Raises:
            ProjectNotFoundError: 프로젝트를 찾을 수 없을 때.
            ProjectNotEmptyError: 종료되지 않은 인스턴스가 하나 이상 존재할 때.
        """
        project = self.get_project_model(owner_id, name)
        if self.instance_repo.count_active_by_project(project.id) > 0:
            raise ProjectNotEmptyError(f"Project '{name}' still has instances.")
        self.project_repo.delete(project)
        logger.info("project_deleted", project_id=project.id, owner_id=owner_id)
        return True

    def list_project_instances(self, owner_id: int, name: str,
                               include_terminated: bool = False) -> List[Dict[str, Any]]:
        project = self.get_project_model(owner_id, name)
        instances = self.instance_repo.list_by_project(project.id, include_terminated=include_terminated)
        return [instance_to_dict(i) for i in instances]

    # ------------------------------------------------------------------
    # 사용자
    # ------------------------------------------------------------------
    def create_user(self, username: str, email: str = "", role: str = "user",
                    public_ssh_key: str = "") -> Dict[str, Any]:
        """
        새로운 사용자를 생성합니다.

        Raises:
            ValidationError: 사용자 이름, 이메일, 역할이 유효하지 않을 때.
            ConflictError: 동일한 이름의 사용자가 이미 존재할 때.
        """
        user_role = validate_user(username, email, role)
        if self.user_repo.find_by_username(username):
            raise ConflictError(f"User with username '{username}' already exists.")
        try:
            created = self.user_repo.create(models.User(
                username=username, email=email or "", role=user_role, public_ssh_key=public_ssh_key or ""
            ))
        except IntegrityError as e:
            raise ConflictError(f"User with username '{username}' already exists.") from e
        logger.info("user_created", user_id=created.id, role=user_role.value)
        return user_to_dict(created)

    def list_users(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        return [user_to_dict(u) for u in self.user_repo.list_all(limit, offset)]

    def get_user(self, user_id: int) -> Dict[str, Any]:
        """
        ID로 특정 사용자를 조회합니다.

        Raises:
            UserNotFoundError: 해당 ID의 사용자를 찾을 수 없을 때.
        """
        user = self.user_repo.find_by_id(user_id)
        if not user:
            raise UserNotFoundError(f"User with id '{user_id}' not found.")
        return user_to_dict(user)

    def get_user_by_username(self, username: str) -> Dict[str, Any]:
        user = self.user_repo.find_by_username(username)
        if not user:
            raise UserNotFoundError(f"User '{username}' not found.")
        return user_to_dict(user)

    def update_user(self, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        사용자의 이메일, 역할, 공개 SSH 키를 변경합니다. 사용자 이름은 변경할 수 없습니다.

        Raises:
            ValidationError: 변경할 수 없는 필드나 잘못된 값이 포함되었을 때.
            UserNotFoundError: 해당 ID의 사용자를 찾을 수 없을 때.
        """
        allowed = {"email", "role", "public_ssh_key"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"cannot update fields: {', '.join(sorted(unknown))}")
        current = self.get_user(user_id)
        changes = dict(fields)
        changes["role"] = validate_user(current["username"], fields.get("email"), fields.get("role", current["role"]))
        updated = self.user_repo.update(user_id, changes)
        if not updated:
            raise UserNotFoundError(f"User with id '{user_id}' not found.")
        return user_to_dict(updated)

    def delete_user(self, user_id: int) -> bool:
        """
        사용자를 삭제합니다.

        Raises:
            UserNotFoundError: 해당 ID의 사용자를 찾을 수 없을 때.
        """
        user = self.user_repo.find_by_id(user_id)
        if not user:
            raise UserNotFoundError(f"User with id '{user_id}' not found.")
        self.user_repo.delete(user)
        logger.info("user_deleted", user_id=user_id)
        return True

    # ------------------------------------------------------------------
    # SSH 키
    # ------------------------------------------------------------------
    def create_ssh_key(self, owner_id: int, name: str, public_key: str) -> Dict[str, Any]:
        """
        SSH 공개 키를 등록합니다.

        Raises:
            ValidationError: 이름이나 키가 비어 있거나 형식이 잘못되었을 때.
            ConflictError: 같은 소유자에게 같은 이름의 키가 이미 있을 때.
        """
        validate_ssh_key(name, public_key)
        if self.ssh_key_repo.find_by_name(owner_id, name):
            raise ConflictError(f"SSH key '{name}' already exists.")
        try:
            created = self.ssh_key_repo.create(models.SSHKey(owner_id=owner_id, name=name.strip(),
                                                              public_key=public_key.strip()))
        except IntegrityError as e:
            raise ConflictError(f"SSH key '{name}' already exists.") from e
        return ssh_key_to_dict(created)

    def list_ssh_keys(self, owner_id: int) -> List[Dict[str, Any]]:
        return [ssh_key_to_dict(k) for k in self.ssh_key_repo.list_by_owner(owner_id)]

    def get_ssh_key_model(self, owner_id: int, name: str) -> models.SSHKey:
        key = self.ssh_key_repo.find_by_name(owner_id, name)
        if not key:
            raise SSHKeyNotFoundError(f"SSH key '{name}' not found.")
        return key

    def delete_ssh_key(self, owner_id: int, name: str) -> bool:
        """
        Raises:
            SSHKeyNotFoundError: 해당 이름의 키가 없을 때.
        """
        self.ssh_key_repo.delete(self.get_ssh_key_model(owner_id, name))
        return True
