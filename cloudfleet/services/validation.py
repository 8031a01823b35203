# cloudfleet/services/validation.py
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from cloudfleet.database.models import ProviderID, TaskAction, UserRole
from cloudfleet.providers.registry import parse_provider_id
from cloudfleet.services.exceptions import ValidationError

MAX_PAYLOAD_SIZE = 2 * 1024 * 1024  # 2 MiB
MAX_HOSTNAME_LENGTH = 63
HOSTNAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
SSH_KEY_PATTERN = re.compile(r"^(ssh-[a-z0-9]+|ecdsa-sha2-[a-z0-9]+|sk-[a-z0-9@.-]+)\s+[A-Za-z0-9+/=]+(\s+.*)?$")


@dataclass
class VolumeConfig:
    name: str
    size_gb: int
    mount_point: str
    filesystem: str = "ext4"

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "size_gb": self.size_gb, "mount_point": self.mount_point,
                "filesystem": self.filesystem}


@dataclass
class InstanceRequest:
    """검증을 통과한 인스턴스 생성 요청 한 건."""
    provider: str
    region: str
    image: str
    ssh_key_name: str
    size: str = ""
    name: str = ""
    number_of_instances: int = 1
    cpu: Optional[int] = None
    memory_mb: Optional[int] = None
    disk_gb: Optional[int] = None
    hypervisor_id: Optional[str] = None
    network_profile_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    volumes: List[VolumeConfig] = field(default_factory=list)
    provision: bool = False
    payload_path: str = ""
    execute_payload: bool = False

    def instance_names(self) -> List[str]:
        """
        배치로 만들 인스턴스 이름 목록.
        이름이 없으면 instance-<uuid>, 개수가 2 이상이면 이름 뒤에 -0, -1 ...을 붙입니다.
        """
        base = self.name or f"instance-{uuid.uuid4()}"
        if self.number_of_instances == 1:
            return [base]
        return [f"{base}-{idx}" for idx in range(self.number_of_instances)]


@dataclass
class TerminateRequest:
    project_name: str
    instance_refs: List[str]


@dataclass
class UploadDeletion:
    upload_path: str
    deletion_timestamp: datetime


def _require_str(data: Dict[str, Any], key: str, context: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{context}: '{key}' is required")
    return value.strip()


def _optional_int(data: Dict[str, Any], key: str, context: str, minimum: int = 1) -> Optional[int]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{context}: '{key}' must be an integer")
    if value < minimum:
        raise ValidationError(f"{context}: '{key}' must be >= {minimum}")
    return value


def _optional_id(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    return str(value)


def validate_hostname(name: str) -> str:
    if len(name) > MAX_HOSTNAME_LENGTH:
        raise ValidationError(f"instance name '{name}' is longer than {MAX_HOSTNAME_LENGTH} characters")
    if not HOSTNAME_PATTERN.match(name):
        raise ValidationError(
            f"instance name '{name}' must contain only lowercase letters, digits and hyphens "
            f"and must start and end with a letter or digit"
        )
    return name


def validate_payload_file(path: str, context: str) -> str:
    if not os.path.isabs(path):
        raise ValidationError(f"{context}: payload_path '{path}' must be an absolute path")
    if not os.path.exists(path):
        raise ValidationError(f"{context}: payload_path '{path}' does not exist")
    if os.path.isdir(path):
        raise ValidationError(f"{context}: payload_path '{path}' is a directory")
    if os.path.getsize(path) > MAX_PAYLOAD_SIZE:
        raise ValidationError(f"{context}: payload '{path}' is larger than {MAX_PAYLOAD_SIZE} bytes")
    return path


def validate_volumes(raw_volumes: Any, context: str) -> List[VolumeConfig]:
    if raw_volumes is None:
        return []
    if not isinstance(raw_volumes, list):
        raise ValidationError(f"{context}: 'volumes' must be a list")
    volumes = []
    mount_points = set()
    for idx, raw in enumerate(raw_volumes):
        vctx = f"{context} volume[{idx}]"
        if not isinstance(raw, dict):
            raise ValidationError(f"{vctx}: must be an object")
        name = _require_str(raw, "name", vctx)
        size_gb = _optional_int(raw, "size_gb", vctx)
        if size_gb is None:
            raise ValidationError(f"{vctx}: 'size_gb' is required")
        mount_point = _require_str(raw, "mount_point", vctx)
        if not mount_point.startswith("/"):
            raise ValidationError(f"{vctx}: 'mount_point' must be an absolute path")
        if mount_point in mount_points:
            raise ValidationError(f"{vctx}: duplicate mount point '{mount_point}'")
        mount_points.add(mount_point)
        volumes.append(VolumeConfig(name=name, size_gb=size_gb, mount_point=mount_point,
                                    filesystem=raw.get("filesystem") or "ext4"))
    return volumes


def validate_instance_request(data: Any, index: int = 0) -> InstanceRequest:
    """
    인스턴스 생성 요청 한 건을 검증하고 InstanceRequest로 변환합니다.

    Raises:
        ValidationError: 필수 필드 누락, 잘못된 이름, 페이로드 조건 위반 등.
    """
    context = f"instances[{index}]"
    if not isinstance(data, dict):
        raise ValidationError(f"{context}: must be an object")

    provider = parse_provider_id(_require_str(data, "provider", context)).value
    region = _require_str(data, "region", context)
    image = _require_str(data, "image", context)
    ssh_key_name = _require_str(data, "ssh_key_name", context)

    count = data.get("number_of_instances", 1)
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ValidationError(f"{context}: 'number_of_instances' must be a positive integer")

    size = data.get("size") or ""
    cpu = _optional_int(data, "cpu", context)
    memory_mb = _optional_int(data, "memory", context)
    if not size and (cpu is None or memory_mb is None):
        raise ValidationError(f"{context}: either 'size' or both 'memory' and 'cpu' must be provided")

    name = (data.get("name") or "").strip()
    if name:
        validate_hostname(name)
        if count > 1:
            validate_hostname(f"{name}-{count - 1}")

    tags = data.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise ValidationError(f"{context}: 'tags' must be a list of strings")

    payload_path = (data.get("payload_path") or "").strip()
    execute_payload = bool(data.get("execute_payload", False))
    provision = bool(data.get("provision", False))
    if execute_payload and not payload_path:
        raise ValidationError(f"{context}: 'execute_payload' requires 'payload_path'")
    if payload_path:
        if not provision:
            raise ValidationError(f"{context}: 'payload_path' requires 'provision' to be true")
        validate_payload_file(payload_path, context)

    volumes = validate_volumes(data.get("volumes"), context)
    # libvirt 디스크는 템플릿 이미지의 CoW 복사본이라 크기를 늘리거나 볼륨을 붙일 수 없습니다.
    if volumes and provider == ProviderID.LIBVIRT.value:
        raise ValidationError(f"{context}: provider '{provider}' does not support volumes")

    return InstanceRequest(
        provider=provider,
        region=region,
        image=image,
        ssh_key_name=ssh_key_name,
        size=size,
        name=name,
        number_of_instances=count,
        cpu=cpu,
        memory_mb=memory_mb,
        disk_gb=_optional_int(data, "disk_gb", context),
        hypervisor_id=_optional_id(data, "hypervisor_id"),
        network_profile_id=_optional_id(data, "network_profile_id"),
        tags=list(tags),
        volumes=volumes,
        provision=provision,
        payload_path=payload_path,
        execute_payload=execute_payload,
    )


def validate_instance_requests(raw_instances: Any) -> List[InstanceRequest]:
    if not isinstance(raw_instances, list) or not raw_instances:
        raise ValidationError("'instances' must be a non-empty list")
    return [validate_instance_request(item, idx) for idx, item in enumerate(raw_instances)]


def validate_terminate_request(project_name: Any, instance_refs: Any) -> TerminateRequest:
    if not isinstance(project_name, str) or not project_name.strip():
        raise ValidationError("'project_name' is required")
    if not isinstance(instance_refs, list) or not instance_refs:
        raise ValidationError("'instance_ids' must be a non-empty list")
    refs = []
    for ref in instance_refs:
        if isinstance(ref, bool) or not isinstance(ref, (int, str)) or str(ref).strip() == "":
            raise ValidationError(f"invalid instance identifier: {ref!r}")
        refs.append(str(ref).strip())
    return TerminateRequest(project_name=project_name.strip(), instance_refs=refs)


def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 문자열을 naive UTC datetime으로 변환합니다."""
    if not isinstance(value, str) or not value:
        raise ValidationError("'deletion_timestamp' must be an ISO-8601 string")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"invalid deletion_timestamp: '{value}'")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def validate_upload_deletion(payload: Any, upload_dir: str) -> UploadDeletion:
    if not isinstance(payload, dict):
        raise ValidationError("delete_upload payload must be an object")
    upload_path = _require_str(payload, "upload_path", "delete_upload")
    if not os.path.isabs(upload_path):
        raise ValidationError(f"upload_path '{upload_path}' must be an absolute path")
    root = os.path.realpath(upload_dir)
    resolved = os.path.realpath(upload_path)
    if resolved == root or not resolved.startswith(root + os.sep):
        raise ValidationError(f"upload_path '{upload_path}' is not inside the upload directory")
    return UploadDeletion(upload_path=resolved, deletion_timestamp=parse_timestamp(payload.get("deletion_timestamp")))


def validate_task_payload(action: TaskAction, payload: Any, upload_dir: str) -> None:
    """태스크 액션별 페이로드 형태를 검증합니다."""
    if action == TaskAction.CREATE_INSTANCES:
        if not isinstance(payload, dict):
            raise ValidationError("create_instances payload must be an object")
        validate_instance_requests(payload.get("instances"))
    elif action == TaskAction.TERMINATE_INSTANCES:
        if not isinstance(payload, dict):
            raise ValidationError("terminate_instances payload must be an object")
        validate_terminate_request(payload.get("project_name"), payload.get("instance_ids"))
    elif action == TaskAction.DELETE_UPLOAD:
        validate_upload_deletion(payload, upload_dir)
    else:
        raise ValidationError(f"unsupported task action: {action}")


def parse_task_action(value: Any) -> TaskAction:
    try:
        return TaskAction(value)
    except ValueError:
        raise ValidationError(f"unsupported task action: '{value}'")


def validate_webhook_url(url: Any) -> str:
    if url is None or url == "":
        return ""
    if not isinstance(url, str):
        raise ValidationError("'webhook_url' must be a string")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"invalid webhook_url: '{url}'")
    return url


def validate_project_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("project name is required")
    if len(name.strip()) > 255:
        raise ValidationError("project name must be at most 255 characters")
    return name.strip()


def validate_ssh_key(name: Any, public_key: Any) -> None:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("ssh key name is required")
    if not isinstance(public_key, str) or not public_key.strip():
        raise ValidationError("ssh public key is required")
    if not SSH_KEY_PATTERN.match(public_key.strip()):
        raise ValidationError("ssh public key is not in OpenSSH format")


def validate_user(username: Any, email: Any, role: Any) -> UserRole:
    if not isinstance(username, str) or not username.strip():
        raise ValidationError("username is required")
    if email and (not isinstance(email, str) or "@" not in email):
        raise ValidationError(f"invalid email: '{email}'")
    try:
        return UserRole(role or UserRole.USER.value)
    except ValueError:
        raise ValidationError(f"invalid role: '{role}'")
