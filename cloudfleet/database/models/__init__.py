from .enums import (
    ADMIN_ID,
    TaskStatus,
    TaskAction,
    TaskPriority,
    InstanceStatus,
    PayloadStatus,
    UserRole,
    ProviderID,
)
from .user import User
from .project import Project
from .ssh_key import SSHKey
from .task import Task
from .instance import Instance
from .association import TaskInstance
