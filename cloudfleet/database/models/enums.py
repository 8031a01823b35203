import enum
from sqlalchemy import Enum as SAEnum


class TaskStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"


class TaskAction(str, enum.Enum):
    CREATE_INSTANCES = "create_instances"
    TERMINATE_INSTANCES = "terminate_instances"
    DELETE_UPLOAD = "delete_upload"


class TaskPriority(int, enum.Enum):
    HIGH = 1
    LOW = 2


class InstanceStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    PROVISIONING = "provisioning"
    CREATED = "created"
    READY = "ready"
    TERMINATED = "terminated"


class PayloadStatus(str, enum.Enum):
    NONE = "none"
    PENDING_COPY = "pending_copy"
    COPY_FAILED = "copy_failed"
    COPIED = "copied"
    PENDING_EXECUTION = "pending_execution"
    EXECUTION_FAILED = "execution_failed"
    EXECUTED = "executed"


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class ProviderID(str, enum.Enum):
    AWS = "aws"
    GCP = "gcp"
    AZURE = "azure"
    DIGITALOCEAN = "do"
    VIRTFUSION = "virtfusion"
    LIBVIRT = "libvirt"
    MOCK = "mock"


# 관리자 요청은 소유자 범위 검사를 건너뜁니다.
ADMIN_ID = 2 ** 32 - 1

TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TERMINATED})
ACTIVE_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RUNNING})

TASK_TRANSITIONS = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.TERMINATED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TERMINATED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.TERMINATED: frozenset(),
}

# terminated는 어느 비종료 상태에서든 도달 가능하며 흡수 상태입니다.
INSTANCE_TRANSITIONS = {
    InstanceStatus.UNKNOWN: frozenset({InstanceStatus.PENDING, InstanceStatus.TERMINATED}),
    InstanceStatus.PENDING: frozenset({InstanceStatus.PROVISIONING, InstanceStatus.TERMINATED}),
    InstanceStatus.PROVISIONING: frozenset({InstanceStatus.CREATED, InstanceStatus.TERMINATED}),
    InstanceStatus.CREATED: frozenset({InstanceStatus.READY, InstanceStatus.TERMINATED}),
    InstanceStatus.READY: frozenset({InstanceStatus.TERMINATED}),
    InstanceStatus.TERMINATED: frozenset(),
}

PAYLOAD_TRANSITIONS = {
    PayloadStatus.NONE: frozenset({PayloadStatus.PENDING_COPY}),
    PayloadStatus.PENDING_COPY: frozenset({PayloadStatus.COPIED, PayloadStatus.COPY_FAILED}),
    PayloadStatus.COPY_FAILED: frozenset({PayloadStatus.PENDING_COPY}),
    PayloadStatus.COPIED: frozenset({PayloadStatus.PENDING_EXECUTION}),
    PayloadStatus.PENDING_EXECUTION: frozenset({PayloadStatus.EXECUTED, PayloadStatus.EXECUTION_FAILED}),
    PayloadStatus.EXECUTION_FAILED: frozenset({PayloadStatus.PENDING_EXECUTION}),
    PayloadStatus.EXECUTED: frozenset(),
}


def sources_for(transitions, target):
    """target 상태로 전이할 수 있는 모든 출발 상태를 반환합니다."""
    return [src for src, targets in transitions.items() if target in targets]


def can_transition(transitions, current, target) -> bool:
    return target in transitions.get(current, frozenset())


def enum_column_type(enum_cls):
    """Enum 값을 문자열로 저장하고, 읽을 때는 Enum 멤버로 돌려주는 컬럼 타입."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )
