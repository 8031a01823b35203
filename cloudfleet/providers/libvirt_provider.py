import os
import subprocess
import threading
import uuid
from typing import List, Optional

import libvirt

from cloudfleet.config import LibvirtSettings
from cloudfleet.logging_config import get_logger
from cloudfleet.providers.base import (
    CreateServerRequest,
    Hypervisor,
    NetworkProfile,
    ProviderAdapter,
    ServerInfo,
    ServerState,
)
from cloudfleet.providers.hypervisor import select_network_profile
from cloudfleet.services.exceptions import (
    ConfigurationError,
    ProviderAuthError,
    ProviderError,
    ProviderNotFoundError,
    ProvisioningError,
)
from cloudfleet.utils.context import CallContext
from cloudfleet.utils.vm_xml_generator import generate_vm_xml

logger = get_logger(__name__)

LOCAL_HYPERVISOR_ID = "local"
DEFAULT_CPU = 1
DEFAULT_MEMORY_MB = 1024


class LibvirtProvider(ProviderAdapter):
    """
    로컬 KVM 하이퍼바이저(libvirt) 어댑터.

    qemu-img로 기반 이미지를 backing file로 하는 CoW 디스크를 만들고,
    도메인 XML 템플릿으로 VM을 정의한 뒤 시작합니다.
    provider_instance_id는 libvirt 도메인 UUID입니다.
    """

    provider_id = "libvirt"

    def __init__(self, settings: Optional[LibvirtSettings] = None):
        self.settings = settings or LibvirtSettings()
        self._lock = threading.Lock()
        try:
            self.conn = libvirt.open(self.settings.uri)
        except libvirt.libvirtError as e:
            raise ConfigurationError(f"Failed to open connection to the hypervisor at '{self.settings.uri}': {e}") from e

    # ------------------------------------------------------------------
    # libvirt 오류 변환
    # ------------------------------------------------------------------
    @staticmethod
    def _translate(e: "libvirt.libvirtError", operation: str) -> ProviderError:
        code = e.get_error_code()
        if code in (libvirt.VIR_ERR_NO_DOMAIN, libvirt.VIR_ERR_NO_NETWORK):
            return ProviderNotFoundError(f"{operation}: {e}")
        if code in (libvirt.VIR_ERR_AUTH_FAILED, libvirt.VIR_ERR_OPERATION_DENIED):
            return ProviderAuthError(f"{operation}: {e}")
        if code in (libvirt.VIR_ERR_SYSTEM_ERROR, libvirt.VIR_ERR_RPC, libvirt.VIR_ERR_OPERATION_TIMEOUT):
            return ProviderError(f"{operation}: {e}", retryable=True)
        return ProviderError(f"{operation}: {e}", retryable=False)

    def _lookup(self, provider_instance_id: str):
        try:
            return self.conn.lookupByUUIDString(provider_instance_id)
        except libvirt.libvirtError as e:
            raise self._translate(e, f"lookup domain '{provider_instance_id}'") from e

    # ------------------------------------------------------------------
    # ProviderAdapter
    # ------------------------------------------------------------------
    def connect(self, ctx: CallContext) -> None:
        ctx.check("connect")
        try:
            self.conn.getVersion()
        except libvirt.libvirtError as e:
            raise self._translate(e, "connect") from e

    def list_regions(self, ctx: CallContext) -> List[Hypervisor]:
        ctx.check("list_regions")
        try:
            networks = self.conn.listAllNetworks(0)
        except libvirt.libvirtError as e:
            raise self._translate(e, "list networks") from e
        profiles = [
            NetworkProfile(id=net.name(), name=net.name(), default=(net.name() == "default"))
            for net in networks if net.isActive()
        ]
        return [Hypervisor(id=LOCAL_HYPERVISOR_ID, name=self.conn.getHostname(), region=self.settings.uri,
                           networks=profiles)]

    def create_server(self, ctx: CallContext, request: CreateServerRequest) -> ServerInfo:
        hypervisor = self.list_regions(ctx)[0]
        network = select_network_profile(hypervisor, request.network_profile_id)
        source_filepath = self._base_image_path(request.image)

        vm_uuid = str(uuid.uuid4())
        vm_disk_filepath = None
        domain = None
        ctx.check("create_server")
        try:
            vm_disk_filepath = self._create_vm_disk(request.name, source_filepath)
            xml_config = generate_vm_xml(
                request.name, vm_uuid,
                request.resources.cpu or DEFAULT_CPU,
                request.resources.memory_mb or DEFAULT_MEMORY_MB,
                vm_disk_filepath,
                network_name=network.id,
                tags=request.tags,
            )
            with self._lock:
                domain = self.conn.defineXML(xml_config)
                if domain.create() < 0:
                    raise ProviderError(f"failed to start domain '{request.name}' after definition")
        except libvirt.libvirtError as e:
            self._rollback_vm_creation(domain, vm_disk_filepath)
            raise self._translate(e, f"create domain '{request.name}'") from e
        except ProviderError:
            self._rollback_vm_creation(domain, vm_disk_filepath)
            raise

        logger.info("libvirt_domain_created", name=request.name, uuid=vm_uuid, network=network.id)
        return ServerInfo(provider_instance_id=vm_uuid, state=ServerState.PROVISIONING,
                          metadata={"disk": vm_disk_filepath, "network_id": network.id})

    def get_server(self, ctx: CallContext, provider_instance_id: str) -> ServerInfo:
        ctx.check("get_server")
        domain = self._lookup(provider_instance_id)
        try:
            state_code = domain.info()[0]
            public_ip = self._domain_ip(domain) if state_code == libvirt.VIR_DOMAIN_RUNNING else ""
        except libvirt.libvirtError as e:
            raise self._translate(e, f"inspect domain '{provider_instance_id}'") from e
        return ServerInfo(
            provider_instance_id=provider_instance_id,
            state=self._map_vm_state(state_code, bool(public_ip)),
            public_ip=public_ip,
            metadata={"name": domain.name()},
        )

    def delete_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        ctx.check("delete_server")
        domain = self._lookup(provider_instance_id)
        name = domain.name()
        try:
            with self._lock:
                if domain.isActive():
                    domain.destroy()
                domain.undefine()
        except libvirt.libvirtError as e:
            raise self._translate(e, f"delete domain '{name}'") from e
        self._delete_vm_disk(os.path.join(self.settings.image_dir, f"{name}.qcow2"))
        logger.info("libvirt_domain_deleted", name=name, uuid=provider_instance_id)

    def suspend_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        ctx.check("suspend_server")
        domain = self._lookup(provider_instance_id)
        try:
            domain.suspend()
        except libvirt.libvirtError as e:
            raise self._translate(e, f"suspend domain '{provider_instance_id}'") from e

    def unsuspend_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        ctx.check("unsuspend_server")
        domain = self._lookup(provider_instance_id)
        try:
            domain.resume()
        except libvirt.libvirtError as e:
            raise self._translate(e, f"resume domain '{provider_instance_id}'") from e

    def close(self) -> None:
        try:
            self.conn.close()
        except libvirt.libvirtError as e:
            logger.warning("libvirt_close_failed", error=str(e))

    # ------------------------------------------------------------------
    # 디스크 및 상태 헬퍼
    # ------------------------------------------------------------------
    def _base_image_path(self, image: str) -> str:
        path = image if os.path.isabs(image) else os.path.join(self.settings.image_dir, f"{image}.qcow2")
        if not os.path.exists(path):
            raise ProvisioningError(f"base image file not found: {path}")
        return path

    def _sudo(self, command: List[str]) -> List[str]:
        return ['sudo'] + command if self.settings.use_sudo else command

    def _create_vm_disk(self, vm_name: str, source_filepath: str) -> str:
        """원본 이미지를 backing file로 하는 qcow2 CoW 디스크를 만듭니다."""
        target_filepath = os.path.join(self.settings.image_dir, f"{vm_name}.qcow2")
        command = self._sudo([
            'qemu-img', 'create',
            '-f', 'qcow2',
            '-F', 'qcow2',
            '-b', source_filepath,
            target_filepath,
        ])
        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            raise ProviderError(f"Failed to create CoW disk for {vm_name}: {e.stderr}") from e
        except FileNotFoundError as e:
            raise ProvisioningError("qemu-img command not found. Install qemu-utils.") from e
        return target_filepath

    def _delete_vm_disk(self, disk_filepath: str) -> None:
        if not os.path.exists(disk_filepath):
            logger.info("libvirt_disk_missing", path=disk_filepath)
            return
        try:
            subprocess.run(self._sudo(['rm', '-f', disk_filepath]), check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            raise ProviderError(f"Failed to delete disk file '{disk_filepath}': {e.stderr}", retryable=True) from e

    def _rollback_vm_creation(self, domain, disk_path):
        if domain:
            try:
                if domain.isActive():
                    domain.destroy()
                domain.undefine()
            except libvirt.libvirtError as e:
                logger.warning("libvirt_rollback_domain_failed", error=str(e))

        if disk_path:
            try:
                self._delete_vm_disk(disk_path)
            except ProviderError as e:
                logger.warning("libvirt_rollback_disk_failed", error=str(e))

    @staticmethod
    def _domain_ip(domain) -> str:
        try:
            interfaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE, 0)
        except libvirt.libvirtError:
            # DHCP 임대 정보가 아직 없으면 IP 없음으로 취급합니다.
            return ""
        for iface in (interfaces or {}).values():
            for addr in iface.get("addrs") or []:
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4:
                    return addr.get("addr", "")
        return ""

    @staticmethod
    def _map_vm_state(state_code, has_ip: bool) -> ServerState:
        if state_code == libvirt.VIR_DOMAIN_RUNNING:
            return ServerState.READY if has_ip else ServerState.CREATED
        state_map = {
            libvirt.VIR_DOMAIN_NOSTATE: ServerState.PROVISIONING,
            libvirt.VIR_DOMAIN_BLOCKED: ServerState.CREATED,
            libvirt.VIR_DOMAIN_PAUSED: ServerState.SUSPENDED,
            libvirt.VIR_DOMAIN_PMSUSPENDED: ServerState.SUSPENDED,
            libvirt.VIR_DOMAIN_SHUTDOWN: ServerState.CREATED,
            libvirt.VIR_DOMAIN_SHUTOFF: ServerState.CREATED,
            libvirt.VIR_DOMAIN_CRASHED: ServerState.ERROR,
        }
        return state_map.get(state_code, ServerState.PROVISIONING)
