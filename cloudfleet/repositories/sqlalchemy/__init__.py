from .sqlalchemy_user_repository import SqlalchemyUserRepository
from .sqlalchemy_project_repository import SqlalchemyProjectRepository
from .sqlalchemy_ssh_key_repository import SqlalchemySSHKeyRepository
from .sqlalchemy_task_repository import SqlalchemyTaskRepository
from .sqlalchemy_instance_repository import SqlalchemyInstanceRepository
