# cloudfleet/app.py
from wsgiref.simple_server import make_server
from urllib.parse import parse_qs
import json
import re
import sys

from cloudfleet.config import Settings
from cloudfleet.database.database import create_session_factory
from cloudfleet.database.db_init import initialize_db
from cloudfleet.database.models import ADMIN_ID
from cloudfleet.logging_config import setup_logging, get_logger
from cloudfleet.providers.registry import ProviderRegistry
from cloudfleet.repositories.sqlalchemy import (
    SqlalchemyInstanceRepository,
    SqlalchemyProjectRepository,
    SqlalchemySSHKeyRepository,
    SqlalchemyTaskRepository,
    SqlalchemyUserRepository,
)
from cloudfleet.services.identity_service import IdentityService
from cloudfleet.services.instance_service import InstanceService
from cloudfleet.services.payload_deployer import PayloadDeployer
from cloudfleet.services.task_service import TaskService
from cloudfleet.services.worker import TaskProcessor, WorkerPool
from cloudfleet.services.exceptions import *

logger = get_logger(__name__)

# --------------------------------------------------------------------------
## 의존성 조립
# --------------------------------------------------------------------------

def build_services(settings, session_factory, registry, deployer=None):
    """리포지토리와 서비스를 생성해 이름별 딕셔너리로 반환합니다."""
    user_repo = SqlalchemyUserRepository(session_factory)
    project_repo = SqlalchemyProjectRepository(session_factory)
    ssh_key_repo = SqlalchemySSHKeyRepository(session_factory)
    instance_repo = SqlalchemyInstanceRepository(session_factory)
    task_repo = SqlalchemyTaskRepository(session_factory)

    deployer = deployer or PayloadDeployer(
        settings, backoff_base=settings.provider_backoff_base, backoff_max=settings.provider_backoff_max
    )
    identity_service = IdentityService(user_repo, project_repo, ssh_key_repo, instance_repo)
    task_service = TaskService(task_repo, project_repo, instance_repo, settings)
    instance_service = InstanceService(instance_repo, project_repo, ssh_key_repo, task_service,
                                       registry, deployer, settings)
    return {
        'identity': identity_service,
        'task': task_service,
        'instance': instance_service,
    }


def build_worker_pool(settings, session_factory, registry, deployer=None):
    services = build_services(settings, session_factory, registry, deployer)
    task_repo = SqlalchemyTaskRepository(session_factory)
    instance_repo = SqlalchemyInstanceRepository(session_factory)
    processor = TaskProcessor(services['task'], services['instance'], task_repo, instance_repo, settings)
    return WorkerPool(processor, task_repo, settings)

# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        return json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise ValueError("Invalid or missing JSON body.")

def get_query_params(environ):
    return {k: v[-1] for k, v in parse_qs(environ.get("QUERY_STRING", "")).items()}

def int_param(params, key, default):
    value = params.get(key)
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must be an integer")
    if number < 0:
        raise ValidationError(f"'{key}' must not be negative")
    return number

def bool_param(params, key):
    value = params.get(key)
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes")

def get_owner_id(environ):
    """X-Owner-ID 헤더의 요청자를 소유자 범위 ID로 변환합니다. 인증은 이 계층 밖에서 처리됩니다."""
    raw = environ.get('HTTP_X_OWNER_ID')
    if not raw:
        raise ValidationError("Missing 'X-Owner-ID' header.")
    try:
        user_id = int(raw)
    except ValueError:
        raise ValidationError(f"Invalid 'X-Owner-ID' header: '{raw}'")
    return environ['services']['identity'].resolve_owner_id(user_id)

def require_admin(environ):
    owner_id = get_owner_id(environ)
    if owner_id != ADMIN_ID:
        raise PermissionDeniedError("Admin privileges are required.")
    return owner_id

def error_status(e):
    error_map = {
        ValidationError: "400 Bad Request",
        ValueError: "400 Bad Request",
        PermissionDeniedError: "403 Forbidden",
        NotFoundError: "404 Not Found",
        ConflictError: "409 Conflict",
        ProviderError: "502 Bad Gateway",
        ConfigurationError: "503 Service Unavailable",
        ServerError: "500 Internal Server Error",
    }
    for cls in type(e).__mro__:
        if cls in error_map:
            return error_map[cls]
    return "500 Internal Server Error"

def handle_exception(e):
    status = error_status(e)
    if status.startswith("500"):
        logger.error("request_failed", error=str(e), exc_info=e)
    return status, json.dumps({"error": str(e)})

# --------------------------------------------------------------------------
## WSGI 애플리케이션 (의존성 주입 및 라우팅)
# --------------------------------------------------------------------------

def create_app(settings, session_factory, registry, deployer=None):
    """설정과 공유 객체를 받아 WSGI 애플리케이션을 만듭니다."""

    def application(environ, start_response):
        try:
            # 1. 의존성 생성 (Repositories -> Services)
            environ['services'] = build_services(settings, session_factory, registry, deployer)
            environ['settings'] = settings

            # 2. 라우팅 및 핸들러 실행
            path = environ.get("PATH_INFO", "")
            method = environ.get("REQUEST_METHOD", "")

            handler, path_args = None, []
            for route_method, pattern, route_handler in ROUTES:
                if method == route_method and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, response_body = handler(environ, *path_args)
            else:
                status, response_body = '404 Not Found', json.dumps({'error': 'Not Found'})

        except Exception as e:
            status, response_body = handle_exception(e)

        start_response(status, [("Content-Type", "application/json")])
        return [response_body.encode("utf-8")]

    return application

# --------------------------------------------------------------------------
## REST 핸들러
# --------------------------------------------------------------------------

def health_handler(environ, *args):
    return '200 OK', json.dumps({"status": "healthy"})

def list_instances_handler(environ, *args):
    owner_id = get_owner_id(environ)
    params = get_query_params(environ)
    instances = environ['services']['instance'].list_instances(
        owner_id,
        include_terminated=bool_param(params, 'include_terminated'),
        limit=int_param(params, 'limit', 100),
        offset=int_param(params, 'offset', 0),
    )
    return '200 OK', json.dumps({"instances": instances})

def create_instances_handler(environ, *args):
    owner_id = get_owner_id(environ)
    data = get_request_data(environ)
    result = environ['services']['instance'].create_instances(
        owner_id, data.get('project_name'), data.get('instances'), data.get('webhook_url', '')
    )
    return '202 Accepted', json.dumps(result)

def delete_instances_handler(environ, *args):
    owner_id = get_owner_id(environ)
    data = get_request_data(environ)
    result = environ['services']['instance'].terminate_instances(
        owner_id, data.get('project_name'), data.get('instance_ids'), data.get('webhook_url', '')
    )
    return '202 Accepted', json.dumps(result)

def get_instance_handler(environ, instance_id):
    owner_id = get_owner_id(environ)
    instance = environ['services']['instance'].get_instance(owner_id, int(instance_id))
    return '200 OK', json.dumps(instance)

def suspend_instance_handler(environ, instance_id):
    owner_id = get_owner_id(environ)
    instance = environ['services']['instance'].suspend_instance(owner_id, int(instance_id))
    return '200 OK', json.dumps(instance)

def unsuspend_instance_handler(environ, instance_id):
    owner_id = get_owner_id(environ)
    instance = environ['services']['instance'].unsuspend_instance(owner_id, int(instance_id))
    return '200 OK', json.dumps(instance)

def list_instance_tasks_handler(environ, instance_id):
    owner_id = get_owner_id(environ)
    params = get_query_params(environ)
    tasks = environ['services']['task'].list_by_instance(
        owner_id, int(instance_id),
        action=params.get('action') or None,
        limit=int_param(params, 'limit', 20),
        offset=int_param(params, 'offset', 0),
    )
    return '200 OK', json.dumps({"tasks": tasks})

def admin_list_instances_handler(environ, *args):
    require_admin(environ)
    params = get_query_params(environ)
    instances = environ['services']['instance'].list_instances(
        ADMIN_ID,
        include_terminated=bool_param(params, 'include_terminated'),
        limit=int_param(params, 'limit', 100),
        offset=int_param(params, 'offset', 0),
    )
    return '200 OK', json.dumps({"instances": instances})

def admin_get_instance_handler(environ, instance_id):
    require_admin(environ)
    instance = environ['services']['instance'].get_instance(ADMIN_ID, int(instance_id))
    return '200 OK', json.dumps(instance)

def create_user_handler(environ, *args):
    data = get_request_data(environ)
    user = environ['services']['identity'].create_user(
        data.get('username'), data.get('email', ''), data.get('role', 'user'), data.get('public_ssh_key', '')
    )
    return '201 Created', json.dumps(user)

def list_users_handler(environ, *args):
    params = get_query_params(environ)
    users = environ['services']['identity'].list_users(int_param(params, 'limit', 100), int_param(params, 'offset', 0))
    return '200 OK', json.dumps({"users": users})

def get_user_handler(environ, user_id):
    user = environ['services']['identity'].get_user(int(user_id))
    return '200 OK', json.dumps(user)

def update_user_handler(environ, user_id):
    data = get_request_data(environ)
    user = environ['services']['identity'].update_user(int(user_id), data)
    return '200 OK', json.dumps(user)

def delete_user_handler(environ, user_id):
    environ['services']['identity'].delete_user(int(user_id))
    return '204 No Content', ''

# --------------------------------------------------------------------------
## RPC 핸들러
# --------------------------------------------------------------------------

def _project_create(services, owner_id, params):
    return services['identity'].create_project(
        owner_id, params.get('name'), params.get('description', ''), params.get('config')
    )

def _project_get(services, owner_id, params):
    return services['identity'].get_project(owner_id, params.get('name'))

def _project_list(services, owner_id, params):
    return services['identity'].list_projects(
        owner_id, int_param(params, 'limit', 100), int_param(params, 'offset', 0)
    )

def _project_delete(services, owner_id, params):
    return services['identity'].delete_project(owner_id, params.get('name'))

def _project_instances(services, owner_id, params):
    return services['identity'].list_project_instances(
        owner_id, params.get('name'), bool_param(params, 'include_terminated')
    )

def _task_create(services, owner_id, params):
    """액션에 맞는 서비스로 태스크 생성을 위임합니다."""
    action = params.get('action')
    payload = params.get('payload') or {}
    if not isinstance(payload, dict):
        raise ValidationError("'payload' must be an object")
    webhook_url = params.get('webhook_url', '')
    if action == 'create_instances':
        return services['instance'].create_instances(
            owner_id, params.get('project_name'), payload.get('instances'), webhook_url
        )
    if action == 'terminate_instances':
        return services['instance'].terminate_instances(
            owner_id, payload.get('project_name') or params.get('project_name'),
            payload.get('instance_ids'), webhook_url
        )
    project = services['identity'].get_project_model(owner_id, params.get('project_name'))
    task = services['task'].create_task(owner_id, project.id, action, payload, webhook_url)
    return services['task'].get_task(owner_id, task.id)

def _task_get(services, owner_id, params):
    return services['task'].get_task(owner_id, int_param(params, 'task_id', 0))

def _task_list(services, owner_id, params):
    return services['task'].list_by_project(
        owner_id, params.get('project_name'), int_param(params, 'limit', 100), int_param(params, 'offset', 0)
    )

def _task_update_status(services, owner_id, params):
    services['task'].update_status(owner_id, int_param(params, 'task_id', 0), params.get('status'))
    return services['task'].get_task(owner_id, int_param(params, 'task_id', 0))

def _task_terminate(services, owner_id, params):
    services['task'].terminate(owner_id, int_param(params, 'task_id', 0))
    return services['task'].get_task(owner_id, int_param(params, 'task_id', 0))

def _user_create(services, owner_id, params):
    return services['identity'].create_user(
        params.get('username'), params.get('email', ''), params.get('role', 'user'), params.get('public_ssh_key', '')
    )

def _user_get(services, owner_id, params):
    if params.get('username'):
        return services['identity'].get_user_by_username(params['username'])
    return services['identity'].get_user(int_param(params, 'user_id', 0))

def _user_list(services, owner_id, params):
    return services['identity'].list_users(int_param(params, 'limit', 100), int_param(params, 'offset', 0))

def _user_update(services, owner_id, params):
    fields = {k: v for k, v in params.items() if k != 'user_id'}
    return services['identity'].update_user(int_param(params, 'user_id', 0), fields)

def _user_delete(services, owner_id, params):
    return services['identity'].delete_user(int_param(params, 'user_id', 0))

def _sshkey_create(services, owner_id, params):
    return services['identity'].create_ssh_key(owner_id, params.get('name'), params.get('public_key'))

def _sshkey_list(services, owner_id, params):
    return services['identity'].list_ssh_keys(owner_id)

def _sshkey_delete(services, owner_id, params):
    return services['identity'].delete_ssh_key(owner_id, params.get('name'))

RPC_METHODS = {
    'project.create': _project_create,
    'project.get': _project_get,
    'project.list': _project_list,
    'project.delete': _project_delete,
    'project.instances': _project_instances,
    'task.create': _task_create,
    'task.get': _task_get,
    'task.list': _task_list,
    'task.update_status': _task_update_status,
    'task.terminate': _task_terminate,
    'user.create': _user_create,
    'user.get': _user_get,
    'user.list': _user_list,
    'user.update': _user_update,
    'user.delete': _user_delete,
    'sshkey.create': _sshkey_create,
    'sshkey.list': _sshkey_list,
    'sshkey.delete': _sshkey_delete,
}

# user.* 는 요청자 식별 없이 호출할 수 있습니다.
OWNERLESS_NAMESPACES = ('user.',)

def rpc_response(status, request_id, data=None, error=None):
    body = {"success": error is None, "id": request_id}
    if error is None:
        body["data"] = data
    else:
        body["error"] = error
    return status, json.dumps(body)

def rpc_handler(environ, *args):
    request_id = None
    try:
        request = get_request_data(environ)
        if not isinstance(request, dict):
            raise ValidationError("RPC request must be an object.")
        request_id = request.get('id')
        method = request.get('method')
        params = request.get('params') or {}
        if not isinstance(params, dict):
            raise ValidationError("'params' must be an object.")

        rpc_method = RPC_METHODS.get(method)
        if rpc_method is None:
            return rpc_response('400 Bad Request', request_id,
                                error={"code": 400, "message": f"Unknown method '{method}'."})

        owner_id = None if method.startswith(OWNERLESS_NAMESPACES) else get_owner_id(environ)
        data = rpc_method(environ['services'], owner_id, params)
        return rpc_response('200 OK', request_id, data=data)
    except Exception as e:
        status = error_status(e)
        if status.startswith("500"):
            logger.error("rpc_failed", error=str(e), exc_info=e)
        return rpc_response(status, request_id, error={"code": int(status.split()[0]), "message": str(e)})

ROUTES = [
    ('GET', r'^/health$', health_handler),
    ('POST', r'^/api/v1/rpc$', rpc_handler),
    ('GET', r'^/api/v1/instances$', list_instances_handler),
    ('POST', r'^/api/v1/instances$', create_instances_handler),
    ('DELETE', r'^/api/v1/instances$', delete_instances_handler),
    ('GET', r'^/api/v1/instances/([0-9]+)$', get_instance_handler),
    ('POST', r'^/api/v1/instances/([0-9]+)/suspend$', suspend_instance_handler),
    ('POST', r'^/api/v1/instances/([0-9]+)/unsuspend$', unsuspend_instance_handler),
    ('GET', r'^/api/v1/instances/([0-9]+)/tasks$', list_instance_tasks_handler),
    ('GET', r'^/api/v1/admin/instances$', admin_list_instances_handler),
    ('GET', r'^/api/v1/admin/instances/([0-9]+)$', admin_get_instance_handler),
    ('POST', r'^/api/v1/users$', create_user_handler),
    ('GET', r'^/api/v1/users$', list_users_handler),
    ('GET', r'^/api/v1/users/([0-9]+)$', get_user_handler),
    ('PUT', r'^/api/v1/users/([0-9]+)$', update_user_handler),
    ('DELETE', r'^/api/v1/users/([0-9]+)$', delete_user_handler),
]

# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

def main():
    settings = Settings()
    setup_logging(settings.service_name, settings.log_format, settings.log_level)

    session_factory = create_session_factory(settings.database_url)
    initialize_db(session_factory)
    registry = ProviderRegistry(connect_timeout=settings.provider_call_timeout)

    worker_pool = build_worker_pool(settings, session_factory, registry)
    worker_pool.start()
    try:
        with make_server(settings.host, settings.port, create_app(settings, session_factory, registry)) as httpd:
            logger.info("server_started", host=settings.host or "0.0.0.0", port=settings.port)
            httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("server_stopping")
    except Exception as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        raise
    finally:
        worker_pool.stop(timeout=settings.poll_interval * 2)
        registry.close()


if __name__ == "__main__":
    main()
