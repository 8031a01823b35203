from .user import IUserRepository
from .project import IProjectRepository
from .ssh_key import ISSHKeyRepository
from .task import ITaskRepository
from .instance import IInstanceRepository
