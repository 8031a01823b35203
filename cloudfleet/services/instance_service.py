import functools
from typing import Any, Dict, List, Optional, Sequence

from cloudfleet.config import Settings
from cloudfleet.database import models
from cloudfleet.database.models import ADMIN_ID, InstanceStatus, PayloadStatus, ProviderID, TaskAction
from cloudfleet.database.models.enums import INSTANCE_TRANSITIONS, sources_for
from cloudfleet.logging_config import get_logger
from cloudfleet.providers.base import CreateServerRequest, ProviderAdapter, Resources, ServerState, VolumeSpec
from cloudfleet.providers.registry import ProviderRegistry
from cloudfleet.providers.retry import call_with_retry
from cloudfleet.repositories.interfaces import IInstanceRepository, IProjectRepository, ISSHKeyRepository
from cloudfleet.services.exceptions import (
    ConfigurationError,
    ConflictError,
    InstanceNotFoundError,
    PayloadDeploymentError,
    ProjectNotFoundError,
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
    ProvisioningError,
    ValidationError,
)
from cloudfleet.services.payload_deployer import PayloadDeployer
from cloudfleet.services.serializers import instance_to_dict
from cloudfleet.services.task_service import InstanceOutcome, TaskService
from cloudfleet.services.validation import InstanceRequest, validate_instance_requests, validate_terminate_request
from cloudfleet.utils.context import CallContext

logger = get_logger(__name__)

NON_TERMINATED_STATUSES = sources_for(INSTANCE_TRANSITIONS, InstanceStatus.TERMINATED)


class InstanceService:
    """
    인스턴스의 수명 주기(pending -> provisioning -> created -> ready, terminated)를 관리합니다.

    요청 단계(create_instances, terminate_instances)는 검증 후 태스크만 만들고 즉시 반환합니다.
    실제 프로바이더 호출(provision_instance, terminate_instance)은 워커가 인스턴스마다 호출합니다.
    """

    def __init__(self, instance_repo: IInstanceRepository, project_repo: IProjectRepository,
                 ssh_key_repo: ISSHKeyRepository, task_service: TaskService,
                 registry: ProviderRegistry, deployer: PayloadDeployer, settings: Settings):
        """
        InstanceService를 초기화합니다.

        Args:
            instance_repo: 인스턴스 데이터에 접근하기 위한 리포지토리.
            project_repo: 프로젝트 소유권 확인용 리포지토리.
            ssh_key_repo: 요청에 지정된 SSH 키를 찾기 위한 리포지토리.
            task_service: 태스크 생성과 상태 확인을 담당하는 서비스.
            registry: provider_id로 어댑터를 찾아 주는 레지스트리.
            deployer: ready 인스턴스에 페이로드를 배포하는 객체.
            settings: 재시도/타임아웃 설정.
        """
        self.instance_repo = instance_repo
        self.project_repo = project_repo
        self.ssh_key_repo = ssh_key_repo
        self.task_service = task_service
        self.registry = registry
        self.deployer = deployer
        self.settings = settings

    # ------------------------------------------------------------------
    # 요청 단계
    # ------------------------------------------------------------------
    def _get_project(self, owner_id: int, project_name: str) -> models.Project:
        project = self.project_repo.find_by_name(owner_id, project_name)
        if not project:
            raise ProjectNotFoundError(f"Project '{project_name}' not found.")
        return project

    def create_instances(self, owner_id: int, project_name: str, raw_instances: Any,
                         webhook_url: str = "") -> Dict[str, Any]:
        """
        인스턴스 생성 요청을 검증하고, pending 인스턴스와 create_instances 태스크를 함께 저장합니다.

        Args:
            owner_id: 요청자 소유자 ID.
            project_name: 인스턴스를 만들 프로젝트 이름.
            raw_instances: 인스턴스 요청 목록 (JSON).
            webhook_url: 태스크가 끝나면 결과를 받을 URL.

        Returns:
            task_id, status, 생성된 인스턴스의 ID와 이름을 담은 딕셔너리.

        Raises:
            ValidationError: 요청 형식이 잘못되었거나 SSH 키를 찾을 수 없을 때.
            ProjectNotFoundError: 프로젝트가 없거나 다른 소유자의 프로젝트일 때.
            ConflictError: 같은 이름의 활성 인스턴스가 프로젝트에 이미 있을 때.
            ConfigurationError: 요청한 프로바이더의 어댑터를 만들 수 없을 때.
        """
        requests = validate_instance_requests(raw_instances)
        project = self._get_project(owner_id, project_name)

        instances: List[models.Instance] = []
        seen_names = set()
        for request in requests:
            # 설정 누락은 태스크를 만들기 전에 드러나야 합니다.
            self.registry.get(request.provider)
            if not self.ssh_key_repo.find_by_name(project.owner_id, request.ssh_key_name):
                raise ValidationError(f"SSH key '{request.ssh_key_name}' not found.")
            for name in request.instance_names():
                if name in seen_names or self.instance_repo.find_active_by_name(project.id, name):
                    raise ConflictError(f"Instance '{name}' already exists in project '{project.name}'.")
                seen_names.add(name)
                instances.append(self._new_instance(project, request, name))

        task = self.task_service.create_task(
            owner_id, project.id, TaskAction.CREATE_INSTANCES, {"instances": raw_instances},
            webhook_url=webhook_url, new_instances=instances,
        )
        logger.info("instances_requested", task_id=task.id, project_id=project.id, count=len(instances))
        return {
            "task_id": task.id,
            "status": task.status.value,
            "project_name": project.name,
            "instance_ids": [i.id for i in instances],
            "instances": [{"id": i.id, "name": i.name, "provider": i.provider_id.value} for i in instances],
        }

    @staticmethod
    def _new_instance(project: models.Project, request: InstanceRequest, name: str) -> models.Instance:
        return models.Instance(
            owner_id=project.owner_id,
            project_id=project.id,
            provider_id=ProviderID(request.provider),
            provider_instance_id="",
            name=name,
            status=InstanceStatus.PENDING,
            payload_status=PayloadStatus.NONE,
            region=request.region,
            size=request.size,
            image=request.image,
            cpu=request.cpu,
            memory_mb=request.memory_mb,
            disk_gb=request.disk_gb,
            hypervisor_id=request.hypervisor_id,
            network_profile_id=request.network_profile_id,
            ssh_key_name=request.ssh_key_name,
            tags=list(request.tags),
            volume_ids=[],
            volume_details=[v.to_dict() for v in request.volumes],
            payload_path=request.payload_path,
            execute_payload=request.execute_payload,
        )

    def terminate_instances(self, owner_id: int, project_name: Any, instance_refs: Any,
                            webhook_url: str = "") -> Dict[str, Any]:
        """
        프로젝트 안의 인스턴스를 ID 또는 이름으로 찾아 terminate_instances 태스크를 만듭니다.

        Raises:
            ValidationError: project_name이나 인스턴스 목록이 비어 있을 때.
            ProjectNotFoundError: 프로젝트가 없거나 다른 소유자의 프로젝트일 때.
            InstanceNotFoundError: 프로젝트 안에서 찾을 수 없는 인스턴스가 있을 때.
        """
        request = validate_terminate_request(project_name, instance_refs)
        project = self._get_project(owner_id, request.project_name)

        instance_ids: List[int] = []
        for ref in request.instance_refs:
            instance = self._resolve_instance(project, ref)
            if instance.id not in instance_ids:
                instance_ids.append(instance.id)

        task = self.task_service.create_task(
            owner_id, project.id, TaskAction.TERMINATE_INSTANCES,
            {"project_name": project.name, "instance_ids": request.instance_refs},
            webhook_url=webhook_url, existing_instance_ids=instance_ids,
        )
        logger.info("termination_requested", task_id=task.id, project_id=project.id, instance_ids=instance_ids)
        return {"task_id": task.id, "status": task.status.value, "instance_ids": instance_ids}

    def _resolve_instance(self, project: models.Project, ref: str) -> models.Instance:
        instance = None
        if ref.isdigit():
            instance = self.instance_repo.find_by_id(int(ref))
        if instance is None or instance.project_id != project.id:
            instance = self.instance_repo.find_active_by_name(project.id, ref)
        if instance is None:
            raise InstanceNotFoundError(f"Instance '{ref}' not found in project '{project.name}'.")
        return instance

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------
    def get_instance_model(self, owner_id: int, instance_id: int) -> models.Instance:
        instance = self.instance_repo.find_by_id(instance_id)
        if not instance or (owner_id != ADMIN_ID and instance.owner_id != owner_id):
            raise InstanceNotFoundError(f"Instance with id '{instance_id}' not found.")
        return instance

    def get_instance(self, owner_id: int, instance_id: int) -> Dict[str, Any]:
        return instance_to_dict(self.get_instance_model(owner_id, instance_id))

    def list_instances(self, owner_id: int, include_terminated: bool = False,
                       limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """소유자의 인스턴스 목록. owner_id가 ADMIN_ID이면 전체 인스턴스를 반환합니다."""
        instances = self.instance_repo.list_by_owner(owner_id, include_terminated, limit, offset)
        return [instance_to_dict(i) for i in instances]

    # ------------------------------------------------------------------
    # 프로바이더 호출
    # ------------------------------------------------------------------
    def _call(self, ctx: CallContext, fn, *args):
        """시도마다 provider_call_timeout 기한을 새로 잡아 재시도 정책으로 호출합니다."""
        @functools.wraps(fn)
        def attempt():
            return fn(ctx.child(self.settings.provider_call_timeout), *args)

        return call_with_retry(
            attempt,
            attempts=self.settings.provider_retry_attempts,
            backoff_base=self.settings.provider_backoff_base,
            backoff_max=self.settings.provider_backoff_max,
            ctx=ctx,
        )

    def _adapter_for(self, instance: models.Instance) -> ProviderAdapter:
        return self.registry.get(instance.provider_id)

    def _mark_terminated(self, instance_id: int, fields: Optional[Dict[str, Any]] = None) -> bool:
        return self.instance_repo.update_status(instance_id, NON_TERMINATED_STATUSES,
                                                InstanceStatus.TERMINATED, fields)

    def provision_instance(self, ctx: CallContext, instance_id: int) -> InstanceOutcome:
        """
        인스턴스 하나를 프로바이더에 생성하고 ready가 될 때까지 진행시킵니다.

        이미 provider_instance_id가 기록된 인스턴스(재시도된 태스크)는 생성을 건너뛰고 폴링부터 합니다.
        재시도 예산을 다 쓰거나 영구 오류가 나면 인스턴스는 terminated가 되고
        이미 만들어진 서버는 삭제를 시도합니다.

        Args:
            ctx: 인스턴스 하나의 전체 처리 기한 (provision_timeout).
            instance_id: 대상 인스턴스 ID.

        Returns:
            인스턴스 처리 결과. 페이로드 실패는 success=True와 payload_error로 표현됩니다.
        """
        instance = self.instance_repo.find_by_id(instance_id)
        if instance is None:
            return InstanceOutcome(instance_id, success=False, error="instance record not found")
        if instance.status == InstanceStatus.TERMINATED:
            return InstanceOutcome(instance_id, success=False, error="instance was terminated before provisioning")

        log = logger.bind(instance_id=instance_id, provider=instance.provider_id.value)
        if instance.status != InstanceStatus.READY:
            try:
                instance = self._provision(ctx, instance)
            except (ProviderError, ConfigurationError) as e:
                log.error("instance_provisioning_failed", error=str(e))
                return InstanceOutcome(instance_id, success=False, error=self._discard(ctx, instance_id, str(e)))
            log.info("instance_ready", provider_instance_id=instance.provider_instance_id,
                     public_ip=instance.public_ip)

        payload_error = ""
        if instance.has_payload:
            payload_error = self.deploy_payload(ctx, instance)
        return InstanceOutcome(instance_id, success=True, payload_error=payload_error)

    def _provision(self, ctx: CallContext, instance: models.Instance) -> models.Instance:
        adapter = self._adapter_for(instance)

        if instance.status == InstanceStatus.PENDING:
            if not self.instance_repo.update_status(instance.id, [InstanceStatus.PENDING],
                                                    InstanceStatus.PROVISIONING):
                raise ProvisioningError(f"instance {instance.id} left pending before provisioning started")

        provider_instance_id = instance.provider_instance_id
        if not provider_instance_id:
            request = CreateServerRequest(
                name=instance.name,
                image=instance.image,
                region=instance.region,
                size=instance.size,
                resources=Resources(cpu=instance.cpu, memory_mb=instance.memory_mb, disk_gb=instance.disk_gb),
                hypervisor_id=instance.hypervisor_id,
                network_profile_id=instance.network_profile_id,
                ssh_public_keys=self._ssh_public_keys(instance),
                tags=list(instance.tags or []),
                volumes=[VolumeSpec(name=v["name"], size_gb=v["size_gb"], mount_point=v.get("mount_point", ""),
                                    filesystem=v.get("filesystem") or "ext4")
                         for v in instance.volume_details or []],
            )
            info = self._call(ctx, adapter.create_server, request)
            provider_instance_id = info.provider_instance_id
            # 배치 도중 중단되어도 프로바이더 쪽 리소스를 잃지 않도록 바로 기록합니다.
            self.instance_repo.update_fields(instance.id, {"provider_instance_id": provider_instance_id,
                                                           "volume_ids": list(info.volume_ids)})

        while True:
            info = self._call(ctx, adapter.get_server, provider_instance_id)
            if info.state in (ServerState.DELETED, ServerState.ERROR):
                raise ProvisioningError(f"server {provider_instance_id} entered state '{info.state.value}'")
            if info.state in (ServerState.CREATED, ServerState.READY):
                self.instance_repo.update_status(instance.id, [InstanceStatus.PROVISIONING], InstanceStatus.CREATED,
                                                 {"public_ip": info.public_ip or ""})
            if info.state == ServerState.READY and info.public_ip:
                if not self.instance_repo.update_status(instance.id, [InstanceStatus.CREATED], InstanceStatus.READY,
                                                        {"public_ip": info.public_ip}):
                    raise ProvisioningError(f"instance {instance.id} was changed while provisioning")
                return self.instance_repo.find_by_id(instance.id)
            if ctx.expired():
                raise ProviderTimeoutError(
                    f"server {provider_instance_id} did not become ready within {self.settings.provision_timeout}s"
                )
            ctx.sleep(self.settings.boot_poll_interval)

    def _ssh_public_keys(self, instance: models.Instance) -> List[str]:
        key = self.ssh_key_repo.find_by_name(instance.owner_id, instance.ssh_key_name)
        return [key.public_key] if key else []

    def _discard(self, ctx: CallContext, instance_id: int, error: str) -> str:
        """실패한 생성의 서버를 정리하고 인스턴스를 terminated로 만듭니다. 기록할 오류 문자열을 반환합니다."""
        instance = self.instance_repo.find_by_id(instance_id)
        if instance and instance.provider_instance_id:
            try:
                adapter = self._adapter_for(instance)
                self._call(CallContext(timeout=self.settings.provider_call_timeout, cancel_event=ctx.cancel_event),
                           adapter.delete_server, instance.provider_instance_id)
            except ProviderNotFoundError:
                pass
            except (ProviderError, ConfigurationError) as e:
                logger.warning("instance_cleanup_failed", instance_id=instance_id,
                               provider_instance_id=instance.provider_instance_id, error=str(e))
                error = f"{error} (cleanup of {instance.provider_instance_id} failed: {e})"
        self._mark_terminated(instance_id)
        return error

    def abandon_instance(self, instance_id: int, error: str) -> bool:
        """
        생성 태스크가 실패로 끝날 때 ready에 도달하지 못한 인스턴스를 정리합니다.

        Returns:
            인스턴스를 정리했으면 True. 이미 terminated이거나 ready이면 False.
        """
        instance = self.instance_repo.find_by_id(instance_id)
        if instance is None or instance.status in (InstanceStatus.TERMINATED, InstanceStatus.READY):
            return False
        error = self._discard(CallContext(timeout=self.settings.provision_timeout), instance_id, error)
        logger.warning("instance_abandoned", instance_id=instance_id,
                       provider_instance_id=instance.provider_instance_id, error=error)
        return True

    def deploy_payload(self, ctx: CallContext, instance: models.Instance) -> str:
        """
        ready 인스턴스에 페이로드를 배포합니다.

        Returns:
            실패했으면 오류 메시지, 성공했으면 빈 문자열.
        """
        def transition(expected: Sequence[PayloadStatus], new_status: PayloadStatus) -> bool:
            return self.instance_repo.update_payload_status(instance.id, expected, new_status)

        # 프로비저닝 기한과 별개로, SSH 작업마다 설정된 타임아웃을 적용합니다.
        payload_ctx = CallContext(cancel_event=ctx.cancel_event)
        try:
            status = self.deployer.deploy(payload_ctx, instance, transition)
        except PayloadDeploymentError as e:
            logger.error("payload_deployment_failed", instance_id=instance.id, error=str(e))
            return str(e)
        logger.info("payload_deployed", instance_id=instance.id, payload_status=status.value)
        return ""

    def terminate_instance(self, ctx: CallContext, instance_id: int) -> InstanceOutcome:
        """
        프로바이더에서 서버를 삭제하고 인스턴스를 terminated로 만듭니다.

        프로바이더가 서버를 찾지 못하면 이미 삭제된 것으로 보고 성공 처리합니다.
        provider_instance_id가 없는 인스턴스(생성되지 않은 인스턴스)는 바로 terminated가 됩니다.
        """
        instance = self.instance_repo.find_by_id(instance_id)
        if instance is None:
            return InstanceOutcome(instance_id, success=False, error="instance record not found")
        if instance.status == InstanceStatus.TERMINATED:
            return InstanceOutcome(instance_id, success=True)

        log = logger.bind(instance_id=instance_id, provider=instance.provider_id.value)
        if instance.provider_instance_id:
            try:
                adapter = self._adapter_for(instance)
                self._call(ctx, adapter.delete_server, instance.provider_instance_id)
            except ProviderNotFoundError:
                log.info("instance_already_gone", provider_instance_id=instance.provider_instance_id)
            except (ProviderError, ConfigurationError) as e:
                log.error("instance_termination_failed", error=str(e))
                return InstanceOutcome(instance_id, success=False, error=str(e))

        self._mark_terminated(instance_id)
        log.info("instance_terminated", provider_instance_id=instance.provider_instance_id)
        return InstanceOutcome(instance_id, success=True)

    # ------------------------------------------------------------------
    # 일시 중지
    # ------------------------------------------------------------------
    def suspend_instance(self, owner_id: int, instance_id: int) -> Dict[str, Any]:
        """
        ready 인스턴스를 일시 중지합니다. 동기 호출입니다.

        Raises:
            InstanceNotFoundError: 인스턴스가 없거나 다른 소유자의 인스턴스일 때.
            ConflictError: ready가 아니거나 다른 태스크가 처리 중일 때.
            ProviderError: 프로바이더 호출이 실패했을 때 (서버가 없으면 ProviderNotFoundError).
        """
        return self._power_action(owner_id, instance_id, "suspend")

    def unsuspend_instance(self, owner_id: int, instance_id: int) -> Dict[str, Any]:
        return self._power_action(owner_id, instance_id, "unsuspend")

    def _power_action(self, owner_id: int, instance_id: int, action: str) -> Dict[str, Any]:
        instance = self.get_instance_model(owner_id, instance_id)
        if instance.status != InstanceStatus.READY or not instance.provider_instance_id:
            raise ConflictError(f"Instance {instance_id} is '{instance.status.value}'; only ready instances can {action}.")
        holder = instance.locked_by_task_id
        if holder and (self.task_service.is_active(holder) or self.task_service.is_processing(holder)):
            raise ConflictError(f"Instance {instance_id} is being changed by task {instance.locked_by_task_id}.")

        adapter = self._adapter_for(instance)
        fn = adapter.suspend_server if action == "suspend" else adapter.unsuspend_server
        self._call(CallContext(timeout=self.settings.provision_timeout), fn, instance.provider_instance_id)
        logger.info(f"instance_{action}ed", instance_id=instance_id)
        return instance_to_dict(instance)
