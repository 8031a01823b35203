# tests/services/test_identity_service.py
import pytest
from unittest.mock import MagicMock, ANY
from sqlalchemy.exc import IntegrityError

from cloudfleet.services.identity_service import IdentityService
from cloudfleet.services.exceptions import *
from cloudfleet.repositories.interfaces import (
    IUserRepository, IProjectRepository, ISSHKeyRepository, IInstanceRepository
)
from cloudfleet.database import models
from cloudfleet.database.models import ADMIN_ID, UserRole

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIEXAMPLEKEYDATA user@host"

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def mock_user_repo() -> MagicMock:
    """IUserRepository에 대한 모의 객체를 생성합니다."""
    return MagicMock(spec=IUserRepository)

@pytest.fixture
def mock_project_repo() -> MagicMock:
    """IProjectRepository에 대한 모의 객체를 생성합니다."""
    return MagicMock(spec=IProjectRepository)

@pytest.fixture
def mock_ssh_key_repo() -> MagicMock:
    """ISSHKeyRepository에 대한 모의 객체를 생성합니다."""
    return MagicMock(spec=ISSHKeyRepository)

@pytest.fixture
def mock_instance_repo() -> MagicMock:
    """IInstanceRepository에 대한 모의 객체를 생성합니다."""
    return MagicMock(spec=IInstanceRepository)

@pytest.fixture
def identity_service(
    mock_user_repo: MagicMock,
    mock_project_repo: MagicMock,
    mock_ssh_key_repo: MagicMock,
    mock_instance_repo: MagicMock
) -> IdentityService:
    """테스트에 사용될 IdentityService 인스턴스를 생성하고, 의존성을 주입합니다."""
    return IdentityService(mock_user_repo, mock_project_repo, mock_ssh_key_repo, mock_instance_repo)

# ===================================================================
#  소유자 식별 테스트
# ===================================================================
class TestResolveOwner:
    def test_regular_user_is_scoped_to_own_id(self, identity_service, mock_user_repo):
        mock_user_repo.find_by_id.return_value = models.User(id=3, username="alice", role=UserRole.USER)
        assert identity_service.resolve_owner_id(3) == 3

    def test_admin_user_resolves_to_admin_id(self, identity_service, mock_user_repo):
        """admin 역할 사용자는 소유자 범위 검사를 건너뛰는 ADMIN_ID가 됩니다."""
        mock_user_repo.find_by_id.return_value = models.User(id=1, username="admin", role=UserRole.ADMIN)
        assert identity_service.resolve_owner_id(1) == ADMIN_ID

    @pytest.mark.parametrize("user_id", [None, 0])
    def test_missing_or_reserved_owner_is_rejected(self, identity_service, user_id):
        with pytest.raises(ValidationError):
            identity_service.resolve_owner_id(user_id)

    def test_unknown_user_is_not_found(self, identity_service, mock_user_repo):
        mock_user_repo.find_by_id.return_value = None
        with pytest.raises(UserNotFoundError):
            identity_service.resolve_owner_id(42)

# ===================================================================
#  프로젝트 관리(Project Management) 테스트
# ===================================================================
class TestProjectManagement:
    def test_create_project_success(self, identity_service: IdentityService, mock_project_repo: MagicMock):
        """프로젝트 생성 성공 시나리오를 테스트합니다."""
        # === Arrange (테스트 준비) ===
        project_name = "new-project"
        # 시나리오: 프로젝트 이름이 중복되지 않음
        mock_project_repo.find_by_name.return_value = None
        # 시나리오: 리포지토리가 생성된 프로젝트 모델을 반환
        mock_project_repo.create.return_value = models.Project(id=5, owner_id=3, name=project_name, config={})

        # === Act (실제 테스트 대상 실행) ===
        project = identity_service.create_project(3, project_name, "demo")

        # === Assert (결과 검증) ===
        assert project["id"] == 5
        assert project["name"] == project_name
        # 검증: 소유자 범위 안에서 중복을 확인한 뒤 생성했는지 확인
        mock_project_repo.find_by_name.assert_called_once_with(3, project_name)
        mock_project_repo.create.assert_called_once_with(ANY)

    def test_create_project_fails_if_name_exists(self, identity_service: IdentityService, mock_project_repo: MagicMock):
        """같은 소유자에게 같은 이름의 프로젝트가 있으면 ConflictError가 발생합니다."""
        # === Arrange ===
        mock_project_repo.find_by_name.return_value = models.Project(id=1, owner_id=3, name="p1")

        # === Act & Assert ===
        with pytest.raises(ConflictError):
            identity_service.create_project(3, "p1")
        # 검증: create는 호출되지 않았어야 함
        mock_project_repo.create.assert_not_called()

    def test_create_project_race_is_reported_as_conflict(self, identity_service, mock_project_repo):
        """동시에 같은 이름이 생성되어 유니크 제약에 걸리면 ConflictError로 변환됩니다."""
        mock_project_repo.find_by_name.return_value = None
        mock_project_repo.create.side_effect = IntegrityError("INSERT", {}, Exception("unique"))
        with pytest.raises(ConflictError):
            identity_service.create_project(3, "p1")

    def test_blank_project_name_is_rejected(self, identity_service):
        with pytest.raises(ValidationError):
            identity_service.create_project(3, "   ")

    def test_get_project_of_another_owner_is_not_found(self, identity_service, mock_project_repo):
        mock_project_repo.find_by_name.return_value = None
        with pytest.raises(ProjectNotFoundError):
            identity_service.get_project(3, "someone-elses")

    def test_delete_project_success(self, identity_service: IdentityService, mock_project_repo: MagicMock, mock_instance_repo: MagicMock):
        """종료되지 않은 인스턴스가 없는 프로젝트 삭제 성공을 테스트합니다."""
        # === Arrange ===
        mock_project = models.Project(id=2, owner_id=3, name="empty-project")
        mock_project_repo.find_by_name.return_value = mock_project
        mock_instance_repo.count_active_by_project.return_value = 0

        # === Act ===
        result = identity_service.delete_project(3, "empty-project")

        # === Assert ===
        assert result is True
        mock_instance_repo.count_active_by_project.assert_called_once_with(2)
        mock_project_repo.delete.assert_called_once_with(mock_project)

    def test_delete_project_not_empty(self, identity_service: IdentityService, mock_project_repo: MagicMock, mock_instance_repo: MagicMock):
        """살아 있는 인스턴스가 있는 프로젝트 삭제 시 ProjectNotEmptyError 예외를 테스트합니다."""
        # === Arrange ===
        mock_project_repo.find_by_name.return_value = models.Project(id=1, owner_id=3, name="default")
        mock_instance_repo.count_active_by_project.return_value = 2

        # === Act & Assert ===
        with pytest.raises(ProjectNotEmptyError):
            identity_service.delete_project(3, "default")
        mock_project_repo.delete.assert_not_called()

# ===================================================================
#  사용자 관리(User Management) 테스트
# ===================================================================
class TestUserManagement:
    def test_create_user_success(self, identity_service: IdentityService, mock_user_repo: MagicMock):
        """사용자 생성 성공 시나리오를 테스트합니다."""
        # === Arrange ===
        mock_user_repo.find_by_username.return_value = None
        mock_user_repo.create.return_value = models.User(id=4, username="bob", email="bob@example.com",
                                                         role=UserRole.USER, public_ssh_key="")

        # === Act ===
        user = identity_service.create_user("bob", "bob@example.com")

        # === Assert ===
        assert user["id"] == 4
        assert user["role"] == "user"
        created = mock_user_repo.create.call_args.args[0]
        assert created.username == "bob"
        assert created.role == UserRole.USER

    def test_create_user_fails_if_username_exists(self, identity_service, mock_user_repo):
        mock_user_repo.find_by_username.return_value = models.User(id=1, username="bob")
        with pytest.raises(ConflictError):
            identity_service.create_user("bob")
        mock_user_repo.create.assert_not_called()

    def test_create_user_with_invalid_role(self, identity_service, mock_user_repo):
        with pytest.raises(ValidationError):
            identity_service.create_user("bob", role="superuser")

    def test_update_user_rejects_username_change(self, identity_service):
        with pytest.raises(ValidationError):
            identity_service.update_user(4, {"username": "robert"})

    def test_update_user_role(self, identity_service, mock_user_repo):
        # === Arrange ===
        mock_user_repo.find_by_id.return_value = models.User(id=4, username="bob", email="", role=UserRole.USER)
        mock_user_repo.update.return_value = models.User(id=4, username="bob", email="", role=UserRole.ADMIN)

        # === Act ===
        user = identity_service.update_user(4, {"role": "admin"})

        # === Assert ===
        assert user["role"] == "admin"
        mock_user_repo.update.assert_called_once_with(4, {"role": UserRole.ADMIN})

    def test_delete_user_not_found(self, identity_service, mock_user_repo):
        mock_user_repo.find_by_id.return_value = None
        with pytest.raises(UserNotFoundError):
            identity_service.delete_user(99)

# ===================================================================
#  SSH 키 관리 테스트
# ===================================================================
class TestSSHKeyManagement:
    def test_create_ssh_key_success(self, identity_service, mock_ssh_key_repo):
        mock_ssh_key_repo.find_by_name.return_value = None
        mock_ssh_key_repo.create.return_value = models.SSHKey(id=1, owner_id=3, name="laptop", public_key=PUBLIC_KEY)

        key = identity_service.create_ssh_key(3, "laptop", PUBLIC_KEY)

        assert key["name"] == "laptop"
        created = mock_ssh_key_repo.create.call_args.args[0]
        assert created.owner_id == 3

    def test_create_ssh_key_rejects_malformed_key(self, identity_service, mock_ssh_key_repo):
        with pytest.raises(ValidationError):
            identity_service.create_ssh_key(3, "laptop", "not a key")
        mock_ssh_key_repo.create.assert_not_called()

    def test_create_duplicate_ssh_key_name(self, identity_service, mock_ssh_key_repo):
        mock_ssh_key_repo.find_by_name.return_value = models.SSHKey(id=1, owner_id=3, name="laptop")
        with pytest.raises(ConflictError):
            identity_service.create_ssh_key(3, "laptop", PUBLIC_KEY)

    def test_delete_missing_ssh_key(self, identity_service, mock_ssh_key_repo):
        mock_ssh_key_repo.find_by_name.return_value = None
        with pytest.raises(SSHKeyNotFoundError):
            identity_service.delete_ssh_key(3, "laptop")
