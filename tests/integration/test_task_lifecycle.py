# tests/integration/test_task_lifecycle.py
"""
SQLite + MockProvider로 태스크가 접수부터 종료 상태까지 진행되는 전체 흐름을 검증합니다.
워커 스레드 대신 TaskProcessor.process를 직접 호출해 한 번의 처리 시도를 재현합니다.
"""
import json
import os
import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import httpx
import pytest

from cloudfleet.app import build_services, build_worker_pool
from cloudfleet.database.database import utcnow
from cloudfleet.database.models import InstanceStatus, PayloadStatus, TaskAction, TaskStatus
from cloudfleet.providers.base import CreateServerRequest
from cloudfleet.providers.mock import MockProvider
from cloudfleet.providers.registry import ProviderRegistry
from cloudfleet.repositories.sqlalchemy import (
    SqlalchemyInstanceRepository, SqlalchemyProjectRepository, SqlalchemyTaskRepository
)
from cloudfleet.services.payload_deployer import PayloadDeployer
from cloudfleet.services.task_service import TaskService
from cloudfleet.services.worker import TaskProcessor
from cloudfleet.utils.context import CallContext

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIEXAMPLEKEYDATA alice@laptop"

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()

@pytest.fixture
def registry(mock_provider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("mock", mock_provider)
    return registry

@pytest.fixture
def ssh_client() -> MagicMock:
    """기본적으로 모든 접속이 거부되는 SSH 클라이언트."""
    client = MagicMock()
    client.connect.side_effect = OSError("connection refused")
    return client

@pytest.fixture
def services(settings, session_factory, registry, ssh_client):
    deployer = PayloadDeployer(settings, ssh_client_factory=lambda: ssh_client, backoff_base=0, backoff_max=0)
    return build_services(settings, session_factory, registry, deployer)

@pytest.fixture
def task_repo(session_factory):
    return SqlalchemyTaskRepository(session_factory)

@pytest.fixture
def instance_repo(session_factory):
    return SqlalchemyInstanceRepository(session_factory)

@pytest.fixture
def processor(services, task_repo, instance_repo, settings) -> TaskProcessor:
    return TaskProcessor(services['task'], services['instance'], task_repo, instance_repo, settings)

@pytest.fixture
def owner_id(services) -> int:
    """일반 사용자, SSH 키, 프로젝트를 준비하고 소유자 ID를 반환합니다."""
    identity = services['identity']
    user = identity.create_user("alice", "alice@example.com")
    identity.create_ssh_key(user["id"], "laptop", PUBLIC_KEY)
    identity.create_project(user["id"], "demo")
    return user["id"]


def instance_request(**overrides):
    request = {"provider": "mock", "region": "mock-region", "image": "ubuntu-22.04",
               "size": "small", "ssh_key_name": "laptop"}
    request.update(overrides)
    return request


def create(services, owner_id, *requests):
    return services['instance'].create_instances(owner_id, "demo", list(requests))


def terminate(services, owner_id, *refs):
    return services['instance'].terminate_instances(owner_id, "demo", list(refs))

# ===================================================================
#  생성
# ===================================================================
class TestCreateLifecycle:
    def test_create_single_instance(self, services, processor, owner_id, mock_provider):
        """mock 인스턴스 하나가 ready가 되고 태스크는 completed가 됩니다."""
        # === Arrange ===
        handle = create(services, owner_id, instance_request(name="web"))
        assert handle["status"] == "pending"

        # === Act ===
        assert processor.process(handle["task_id"]) is True

        # === Assert ===
        task = services['task'].get_task(owner_id, handle["task_id"])
        assert task["status"] == "completed"
        assert task["error"] == ""
        assert task["attempts"] == 1
        instance = services['instance'].get_instance(owner_id, handle["instance_ids"][0])
        assert instance["status"] == "ready"
        assert instance["provider_instance_id"] in mock_provider.server_ids()
        assert instance["public_ip"] == "192.168.1.100"

    def test_volumes_are_created_and_removed_with_instance(self, services, processor, owner_id, mock_provider):
        """요청한 볼륨이 서버와 함께 만들어져 volume_ids에 기록되고, 종료 시 함께 삭제됩니다."""
        # === Arrange ===
        volumes = [{"name": "data", "size_gb": 20, "mount_point": "/mnt/data"}]
        handle = create(services, owner_id, instance_request(name="db", volumes=volumes))
        instance_id = handle["instance_ids"][0]

        # === Act ===
        processor.process(handle["task_id"])

        # === Assert ===
        instance = services['instance'].get_instance(owner_id, instance_id)
        assert instance["status"] == "ready"
        assert instance["volume_ids"] == list(mock_provider.volumes)
        assert len(instance["volume_ids"]) == 1
        assert instance["volume_details"][0]["mount_point"] == "/mnt/data"

        processor.process(terminate(services, owner_id, instance_id)["task_id"])
        assert mock_provider.volumes == {}

    def test_partial_batch_failure(self, services, processor, owner_id, mock_provider):
        """배치 중 일부만 실패하면 completed이고 error에 실패한 인스턴스 ID가 나열됩니다."""
        # === Arrange ===
        mock_provider.fail_create_names.add("web-1")
        handle = create(services, owner_id, instance_request(name="web", number_of_instances=3))
        web0, web1, web2 = handle["instance_ids"]

        # === Act ===
        processor.process(handle["task_id"])

        # === Assert ===
        task = services['task'].get_task(owner_id, handle["task_id"])
        assert task["status"] == "completed"
        assert f"1 of 3 instances failed: [{web1}]" in task["error"]
        assert task["result"]["failed_instance_ids"] == [web1]
        statuses = {i: services['instance'].get_instance(owner_id, i)["status"] for i in (web0, web1, web2)}
        assert statuses == {web0: "ready", web1: "terminated", web2: "ready"}

    def test_all_instances_failing_fails_the_task(self, services, processor, owner_id, mock_provider):
        mock_provider.fail_create_names.update({"db-0", "db-1"})
        handle = create(services, owner_id, instance_request(name="db", number_of_instances=2))

        processor.process(handle["task_id"])

        task = services['task'].get_task(owner_id, handle["task_id"])
        assert task["status"] == "failed"
        assert task["error"].startswith("2 of 2 instances failed")

    def test_transient_provider_errors_are_absorbed(self, services, processor, owner_id, mock_provider):
        mock_provider.transient_failures["create_server"] = 2
        mock_provider.transient_failures["get_server"] = 1
        handle = create(services, owner_id, instance_request(name="web"))

        processor.process(handle["task_id"])

        assert services['task'].get_task(owner_id, handle["task_id"])["status"] == "completed"
        assert len(mock_provider.server_ids()) == 1

    def test_payload_copy_failure_keeps_instance_ready(self, services, processor, owner_id, ssh_client,
                                                       settings, tmp_path):
        """페이로드 복사가 실패해도 인스턴스는 ready이고 태스크는 error와 함께 completed가 됩니다."""
        # === Arrange ===
        script = tmp_path / "setup.sh"
        script.write_text("#!/bin/sh\necho ready\n")
        handle = create(services, owner_id, instance_request(name="web", provision=True,
                                                             payload_path=str(script), execute_payload=True))

        # === Act ===
        processor.process(handle["task_id"])

        # === Assert ===
        task = services['task'].get_task(owner_id, handle["task_id"])
        assert task["status"] == "completed"
        assert "payload deployment failed" in task["error"]
        instance = services['instance'].get_instance(owner_id, handle["instance_ids"][0])
        assert instance["status"] == "ready"
        assert instance["payload_status"] == PayloadStatus.COPY_FAILED.value
        assert ssh_client.connect.call_count == settings.payload_retry_attempts

    def test_terminated_task_skips_instances(self, services, processor, owner_id, mock_provider):
        """처리 전에 terminate된 태스크는 인스턴스를 만들지 않고 pending 인스턴스를 정리합니다."""
        handle = create(services, owner_id, instance_request(name="web", number_of_instances=2))
        services['task'].terminate(owner_id, handle["task_id"])

        assert processor.process(handle["task_id"]) is False

        assert services['task'].get_task(owner_id, handle["task_id"])["status"] == "terminated"
        assert mock_provider.calls == []
        for instance_id in handle["instance_ids"]:
            assert services['instance'].get_instance(owner_id, instance_id)["status"] == "terminated"

# ===================================================================
#  종료
# ===================================================================
class TestTerminateLifecycle:
    def _ready_instance(self, services, processor, owner_id):
        handle = create(services, owner_id, instance_request(name="web"))
        processor.process(handle["task_id"])
        return handle["instance_ids"][0]

    def test_terminate_ready_instance(self, services, processor, owner_id, mock_provider):
        instance_id = self._ready_instance(services, processor, owner_id)

        handle = terminate(services, owner_id, "web")
        processor.process(handle["task_id"])

        assert services['task'].get_task(owner_id, handle["task_id"])["status"] == "completed"
        assert services['instance'].get_instance(owner_id, instance_id)["status"] == "terminated"
        assert mock_provider.server_ids() == []

    def test_terminate_instance_missing_at_provider(self, services, processor, owner_id, mock_provider):
        """프로바이더에서 이미 사라진 서버의 종료는 성공으로 처리됩니다."""
        instance_id = self._ready_instance(services, processor, owner_id)
        provider_instance_id = services['instance'].get_instance(owner_id, instance_id)["provider_instance_id"]
        mock_provider.delete_server(CallContext(), provider_instance_id)

        handle = terminate(services, owner_id, instance_id)
        processor.process(handle["task_id"])

        task = services['task'].get_task(owner_id, handle["task_id"])
        assert task["status"] == "completed"
        assert task["error"] == ""
        assert services['instance'].get_instance(owner_id, instance_id)["status"] == "terminated"

    def test_terminate_twice(self, services, processor, owner_id):
        instance_id = self._ready_instance(services, processor, owner_id)
        first = terminate(services, owner_id, instance_id)
        second = terminate(services, owner_id, instance_id)

        processor.process(first["task_id"])
        processor.process(second["task_id"])

        for handle in (first, second):
            assert services['task'].get_task(owner_id, handle["task_id"])["status"] == "completed"
        assert services['instance'].get_instance(owner_id, instance_id)["status"] == "terminated"

    def test_task_termination_is_idempotent(self, services, processor, owner_id):
        instance_id = self._ready_instance(services, processor, owner_id)
        handle = terminate(services, owner_id, instance_id)

        services['task'].terminate(owner_id, handle["task_id"])
        again = services['task'].terminate(owner_id, handle["task_id"])

        assert again.status == TaskStatus.TERMINATED

    def test_instances_locked_by_another_task_are_deferred(self, services, processor, owner_id,
                                                          instance_repo, task_repo):
        """다른 태스크가 처리 중에 점유한 인스턴스를 대상으로 하면 시도 횟수를 쓰지 않고 미룹니다."""
        instance_id = self._ready_instance(services, processor, owner_id)
        first = terminate(services, owner_id, instance_id)
        second = terminate(services, owner_id, instance_id)
        task_repo.acquire_lock(first["task_id"], 300)
        instance_repo.claim([instance_id], first["task_id"])

        assert processor.process(second["task_id"]) is False
        assert task_repo.find_by_id(second["task_id"]).attempts == 0
        assert task_repo.find_by_id(second["task_id"]).status == TaskStatus.PENDING

# ===================================================================
#  업로드 삭제 / 재시도 한도
# ===================================================================
class TestDeleteUploadAndAttempts:
    def _delete_upload_task(self, services, owner_id, settings, when):
        upload = os.path.join(settings.upload_dir, "job-1")
        os.makedirs(upload)
        with open(os.path.join(upload, "payload.sh"), "w") as f:
            f.write("echo hi\n")
        project = services['identity'].get_project(owner_id, "demo")
        task = services['task'].create_task(owner_id, project["id"], TaskAction.DELETE_UPLOAD, {
            "upload_path": upload,
            "deletion_timestamp": when.isoformat(),
        })
        return task.id, upload

    def test_upload_not_yet_due_stays_pending(self, services, processor, owner_id, settings, task_repo):
        task_id, upload = self._delete_upload_task(services, owner_id, settings, utcnow() + timedelta(hours=1))

        assert processor.process(task_id) is False

        task = task_repo.find_by_id(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 0
        assert os.path.isdir(upload)

    def test_due_upload_is_deleted(self, services, processor, owner_id, settings, task_repo):
        task_id, upload = self._delete_upload_task(services, owner_id, settings, utcnow() - timedelta(minutes=1))

        assert processor.process(task_id) is True

        task = task_repo.find_by_id(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.result == {"upload_path": os.path.realpath(upload)}
        assert not os.path.exists(upload)

    def test_exhausted_attempts_fail_the_task(self, services, processor, owner_id, settings, task_repo,
                                              mock_provider):
        handle = create(services, owner_id, instance_request(name="web"))
        task_repo.update_fields(handle["task_id"], {"attempts": settings.max_task_attempts})

        processor.process(handle["task_id"])

        task = task_repo.find_by_id(handle["task_id"])
        assert task.status == TaskStatus.FAILED
        assert "exceeded maximum attempts" in task.error
        assert mock_provider.calls == []
        # 실패한 생성 태스크의 인스턴스는 pending에 남지 않습니다.
        assert services['instance'].get_instance(owner_id, handle["instance_ids"][0])["status"] == "terminated"

    def test_exhausted_attempts_discard_created_server(self, services, processor, owner_id, settings,
                                                       task_repo, instance_repo, mock_provider):
        """provisioning 중 중단된 뒤 시도 횟수를 다 쓴 태스크는 이미 만든 서버를 삭제하고 인스턴스를 정리합니다."""
        # === Arrange ===
        handle = create(services, owner_id, instance_request(name="web"))
        instance_id = handle["instance_ids"][0]
        server = mock_provider.create_server(
            CallContext(), CreateServerRequest(name="web", image="ubuntu-22.04", region="mock-region", size="small"))
        instance_repo.update_status(instance_id, [InstanceStatus.PENDING], InstanceStatus.PROVISIONING,
                                    {"provider_instance_id": server.provider_instance_id})
        task_repo.update_fields(handle["task_id"], {"attempts": settings.max_task_attempts})
        mock_provider.calls.clear()

        # === Act ===
        processor.process(handle["task_id"])

        # === Assert ===
        assert task_repo.find_by_id(handle["task_id"]).status == TaskStatus.FAILED
        assert mock_provider.calls == ["delete_server"]
        assert server.provider_instance_id not in mock_provider.server_ids()
        instance = instance_repo.find_by_id(instance_id)
        assert instance.status == InstanceStatus.TERMINATED
        assert instance.locked_by_task_id is None

    def test_internal_error_discards_unfinished_instances(self, services, processor, owner_id, task_repo,
                                                          monkeypatch):
        """처리 중 예기치 못한 오류로 실패한 생성 태스크도 인스턴스를 terminated로 정리합니다."""
        handle = create(services, owner_id, instance_request(name="web"))

        def broken(task, instance_ids):
            raise RuntimeError("boom")

        monkeypatch.setattr(processor, "_run_instances", broken)

        assert processor.process(handle["task_id"]) is True

        task = task_repo.find_by_id(handle["task_id"])
        assert task.status == TaskStatus.FAILED
        assert "internal error: boom" in task.error
        assert services['instance'].get_instance(owner_id, handle["instance_ids"][0])["status"] == "terminated"

    def test_resumed_task_does_not_recreate_server(self, services, processor, owner_id, instance_repo,
                                                   mock_provider):
        """provider_instance_id가 기록된 뒤 중단된 태스크는 다시 처리할 때 서버를 새로 만들지 않습니다."""
        handle = create(services, owner_id, instance_request(name="web"))
        instance_id = handle["instance_ids"][0]
        server = mock_provider.create_server(
            CallContext(), CreateServerRequest(name="web", image="ubuntu-22.04", region="mock-region", size="small"))
        instance_repo.update_status(instance_id, [InstanceStatus.PENDING], InstanceStatus.PROVISIONING,
                                    {"provider_instance_id": server.provider_instance_id})
        mock_provider.calls.clear()

        processor.process(handle["task_id"])

        assert "create_server" not in mock_provider.calls
        instance = services['instance'].get_instance(owner_id, instance_id)
        assert (instance["status"], instance["provider_instance_id"]) == ("ready", server.provider_instance_id)

# ===================================================================
#  워커 풀
# ===================================================================
class TestWorkerPool:
    def test_pool_processes_queued_tasks(self, services, owner_id, settings, session_factory, registry, task_repo):
        """워커 풀을 띄우면 pending 태스크가 폴링되어 종료 상태까지 처리됩니다."""
        handle = create(services, owner_id, instance_request(name="web", number_of_instances=2))
        pool = build_worker_pool(settings, session_factory, registry)

        pool.start()
        try:
            deadline = time.monotonic() + 10
            while time.monotonic() < deadline:
                if task_repo.find_by_id(handle["task_id"]).status == TaskStatus.COMPLETED:
                    break
                time.sleep(0.05)
        finally:
            pool.stop(timeout=5)

        assert task_repo.find_by_id(handle["task_id"]).status == TaskStatus.COMPLETED

    def test_worker_split(self, settings, session_factory, registry):
        settings.worker_count = 5
        settings.high_priority_ratio = 0.4
        pool = build_worker_pool(settings, session_factory, registry)

        assert pool.worker_split() == (2, 3)

# ===================================================================
#  같은 인스턴스에 대한 작업 직렬화
# ===================================================================
class TestInstanceSerialization:
    def test_terminate_waits_for_in_flight_create(self, services, processor, owner_id, task_repo,
                                                  instance_repo, mock_provider, monkeypatch):
        """생성 태스크가 terminate되어도 서버 생성이 진행 중이면 같은 인스턴스의 종료 태스크는 기다립니다."""
        # === Arrange ===
        started, gate = threading.Event(), threading.Event()
        original_create = mock_provider.create_server

        def blocking_create(ctx, request):
            started.set()
            gate.wait(10)
            return original_create(ctx, request)

        monkeypatch.setattr(mock_provider, "create_server", blocking_create)
        handle = create(services, owner_id, instance_request(name="web"))
        instance_id = handle["instance_ids"][0]
        worker = threading.Thread(target=processor.process, args=(handle["task_id"],))
        worker.start()
        assert started.wait(10)

        services['task'].terminate(owner_id, handle["task_id"])
        removal = terminate(services, owner_id, instance_id)

        # === Act ===
        try:
            ran_while_in_flight = processor.process(removal["task_id"])
            status_while_in_flight = task_repo.find_by_id(removal["task_id"]).status
        finally:
            gate.set()
            worker.join(10)

        # === Assert ===
        assert ran_while_in_flight is False
        assert status_while_in_flight == TaskStatus.PENDING
        assert task_repo.find_by_id(handle["task_id"]).status == TaskStatus.TERMINATED
        assert instance_repo.find_by_id(instance_id).status == InstanceStatus.READY

        # 생성 작업이 끝난 뒤에는 종료 태스크가 서버를 정리합니다.
        assert processor.process(removal["task_id"]) is True
        assert task_repo.find_by_id(removal["task_id"]).status == TaskStatus.COMPLETED
        assert instance_repo.find_by_id(instance_id).status == InstanceStatus.TERMINATED
        assert mock_provider.server_ids() == []

# ===================================================================
#  웹훅
# ===================================================================
class TestWebhookDelivery:
    def test_concurrent_senders_post_once(self, settings, session_factory, services, owner_id, task_repo,
                                          instance_repo):
        """API 스레드와 워커가 동시에 웹훅을 보내도 POST는 한 번만 나갑니다."""
        # === Arrange ===
        posts = []
        posts_lock = threading.Lock()

        def handler(request: httpx.Request) -> httpx.Response:
            time.sleep(0.2)
            with posts_lock:
                posts.append(json.loads(request.content))
            return httpx.Response(200)

        handle = services['instance'].create_instances(owner_id, "demo", [instance_request(name="web")],
                                                       "http://hooks.local/done")
        task_repo.update_status(handle["task_id"], [TaskStatus.PENDING], TaskStatus.TERMINATED)
        task_service = TaskService(task_repo, SqlalchemyProjectRepository(session_factory), instance_repo,
                                   settings, http_client=httpx.Client(transport=httpx.MockTransport(handler)))
        barrier = threading.Barrier(2)
        results = []

        def send():
            barrier.wait(5)
            results.append(task_service.send_webhook(handle["task_id"]))

        # === Act ===
        senders = [threading.Thread(target=send) for _ in range(2)]
        for sender in senders:
            sender.start()
        for sender in senders:
            sender.join(10)

        # === Assert ===
        assert len(posts) == 1
        assert posts[0]["status"] == "terminated"
        assert sorted(results) == [False, True]
        assert task_repo.find_by_id(handle["task_id"]).webhook_sent is True

    def test_failed_post_can_be_retried(self, settings, session_factory, services, owner_id, task_repo,
                                        instance_repo):
        responses = [httpx.Response(503), httpx.Response(200)]
        handle = services['instance'].create_instances(owner_id, "demo", [instance_request(name="web")],
                                                       "http://hooks.local/done")
        task_repo.update_status(handle["task_id"], [TaskStatus.PENDING], TaskStatus.FAILED)
        task_service = TaskService(task_repo, SqlalchemyProjectRepository(session_factory), instance_repo,
                                   settings, http_client=httpx.Client(
                                       transport=httpx.MockTransport(lambda request: responses.pop(0))))

        assert task_service.send_webhook(handle["task_id"]) is False
        assert task_repo.find_by_id(handle["task_id"]).webhook_sent is False
        assert task_service.send_webhook(handle["task_id"]) is True
        assert task_repo.find_by_id(handle["task_id"]).webhook_sent is True
