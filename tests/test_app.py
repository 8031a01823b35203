# tests/test_app.py
import io
import json

import pytest

from cloudfleet.app import create_app
from cloudfleet.database.models import ADMIN_ID
from cloudfleet.providers.mock import MockProvider
from cloudfleet.providers.registry import ProviderRegistry

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIEXAMPLEKEYDATA bob@laptop"

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def app(settings, session_factory):
    registry = ProviderRegistry()
    registry.register("mock", MockProvider())
    return create_app(settings, session_factory, registry)


def call(app, method, path, body=None, owner_id=None, query=""):
    """WSGI 환경을 직접 만들어 애플리케이션을 호출하고 (상태 코드, JSON 본문)을 반환합니다."""
    raw = json.dumps(body).encode("utf-8") if body is not None else b""
    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "QUERY_STRING": query,
        "CONTENT_LENGTH": str(len(raw)),
        "wsgi.input": io.BytesIO(raw),
    }
    if owner_id is not None:
        environ["HTTP_X_OWNER_ID"] = str(owner_id)

    captured = {}

    def start_response(status, headers):
        captured["status"] = status

    chunks = app(environ, start_response)
    payload = b"".join(chunks)
    return int(captured["status"].split()[0]), (json.loads(payload) if payload else None)


def rpc(app, method, params=None, owner_id=None, request_id=1):
    return call(app, "POST", "/api/v1/rpc", {"id": request_id, "method": method, "params": params or {}},
                owner_id=owner_id)


@pytest.fixture
def owner_id(app) -> int:
    """RPC로 사용자, SSH 키, 프로젝트를 준비하고 사용자 ID를 반환합니다."""
    _, body = rpc(app, "user.create", {"username": "bob", "email": "bob@example.com"})
    user_id = body["data"]["id"]
    rpc(app, "sshkey.create", {"name": "laptop", "public_key": PUBLIC_KEY}, owner_id=user_id)
    rpc(app, "project.create", {"name": "demo"}, owner_id=user_id)
    return user_id

# ===================================================================
#  REST 엔드포인트
# ===================================================================
class TestRestApi:
    def test_health(self, app):
        assert call(app, "GET", "/health") == (200, {"status": "healthy"})

    def test_unknown_route_is_not_found(self, app):
        status, body = call(app, "GET", "/api/v1/nothing")
        assert status == 404

    def test_missing_owner_header_is_bad_request(self, app):
        status, body = call(app, "GET", "/api/v1/instances")
        assert status == 400
        assert "X-Owner-ID" in body["error"]

    def test_unknown_owner_is_not_found(self, app):
        status, _ = call(app, "GET", "/api/v1/instances", owner_id=424242)
        assert status == 404

    def test_create_instances_is_accepted(self, app, owner_id):
        """인스턴스 생성 요청은 태스크를 큐에 넣고 202로 즉시 응답합니다."""
        # === Arrange ===
        request = {"project_name": "demo", "instances": [
            {"name": "web", "provider": "mock", "region": "mock-region", "image": "ubuntu-22.04",
             "size": "small", "ssh_key_name": "laptop", "number_of_instances": 2},
        ]}

        # === Act ===
        status, body = call(app, "POST", "/api/v1/instances", request, owner_id=owner_id)

        # === Assert ===
        assert status == 202
        assert len(body["instance_ids"]) == 2
        status, task = rpc(app, "task.get", {"task_id": body["task_id"]}, owner_id=owner_id)
        assert task["data"]["status"] == "pending"

        status, instance = call(app, "GET", f"/api/v1/instances/{body['instance_ids'][0]}", owner_id=owner_id)
        assert (status, instance["status"]) == (200, "pending")

    def test_invalid_instance_request_is_bad_request(self, app, owner_id):
        request = {"project_name": "demo", "instances": [{"provider": "mock", "ssh_key_name": "laptop"}]}
        status, _ = call(app, "POST", "/api/v1/instances", request, owner_id=owner_id)
        assert status == 400

    def test_invalid_json_body_is_bad_request(self, app, owner_id):
        environ_body = b"{not json"
        environ = {"REQUEST_METHOD": "POST", "PATH_INFO": "/api/v1/instances", "QUERY_STRING": "",
                   "CONTENT_LENGTH": str(len(environ_body)), "wsgi.input": io.BytesIO(environ_body),
                   "HTTP_X_OWNER_ID": str(owner_id)}
        statuses = []
        app(environ, lambda status, headers: statuses.append(status))
        assert statuses[0].startswith("400")

    def test_negative_limit_is_rejected(self, app, owner_id):
        status, _ = call(app, "GET", "/api/v1/instances", owner_id=owner_id, query="limit=-1")
        assert status == 400

    def test_admin_routes_require_admin(self, app, owner_id):
        status, _ = call(app, "GET", "/api/v1/admin/instances", owner_id=owner_id)
        assert status == 403
        status, body = call(app, "GET", "/api/v1/admin/instances", owner_id=ADMIN_ID)
        assert (status, body) == (200, {"instances": []})

    def test_instance_of_another_owner_is_not_found(self, app, owner_id):
        request = {"project_name": "demo", "instances": [
            {"name": "web", "provider": "mock", "region": "mock-region", "image": "ubuntu-22.04",
             "size": "small", "ssh_key_name": "laptop"},
        ]}
        _, body = call(app, "POST", "/api/v1/instances", request, owner_id=owner_id)
        _, other = rpc(app, "user.create", {"username": "carol"})

        status, _ = call(app, "GET", f"/api/v1/instances/{body['instance_ids'][0]}", owner_id=other["data"]["id"])
        assert status == 404

# ===================================================================
#  RPC 엔드포인트
# ===================================================================
class TestRpcApi:
    def test_unknown_method(self, app):
        status, body = rpc(app, "vm.reboot", request_id="req-9")
        assert status == 400
        assert body["success"] is False
        assert body["id"] == "req-9"
        assert body["error"]["code"] == 400

    def test_project_create_and_get(self, app, owner_id):
        status, body = rpc(app, "project.get", {"name": "demo"}, owner_id=owner_id)
        assert status == 200
        assert body["success"] is True
        assert body["data"]["name"] == "demo"

    def test_duplicate_project_is_conflict(self, app, owner_id):
        status, body = rpc(app, "project.create", {"name": "demo"}, owner_id=owner_id)
        assert status == 409
        assert body["error"]["code"] == 409

    def test_params_must_be_an_object(self, app):
        status, _ = call(app, "POST", "/api/v1/rpc", {"id": 1, "method": "user.list", "params": [1, 2]})
        assert status == 400

    def test_task_terminate(self, app, owner_id):
        """pending 태스크를 RPC로 terminate하면 terminated 상태의 태스크가 반환됩니다."""
        request = {"instances": [
            {"name": "web", "provider": "mock", "region": "mock-region", "image": "ubuntu-22.04",
             "size": "small", "ssh_key_name": "laptop"},
        ]}
        _, created = rpc(app, "task.create", {"action": "create_instances", "project_name": "demo",
                                              "payload": request}, owner_id=owner_id)
        task_id = created["data"]["task_id"]

        status, body = rpc(app, "task.terminate", {"task_id": task_id}, owner_id=owner_id)

        assert status == 200
        assert body["data"]["status"] == "terminated"
