# cloudfleet/utils/vm_xml_generator.py
from functools import lru_cache
from pathlib import Path
from typing import Sequence
from xml.sax.saxutils import escape

from cloudfleet.services.exceptions import ConfigurationError, ProvisioningError

# 템플릿은 패키지 안의 configs 디렉터리에 함께 배포됩니다.
TEMPLATE_PATH = Path(__file__).resolve().parent.parent / 'configs' / 'vm_template.xml'


@lru_cache(maxsize=1)
def load_template() -> str:
    """도메인 XML 템플릿을 처음 한 번만 읽어 둡니다."""
    try:
        return TEMPLATE_PATH.read_text(encoding='utf-8')
    except FileNotFoundError:
        raise ConfigurationError(f"libvirt domain template not found at {TEMPLATE_PATH}")


def generate_vm_xml(vm_name: str, vm_uuid: str, cpu_count: int, ram_mb: int, image_filepath: str,
                    network_name: str = "default", tags: Sequence[str] = ()) -> str:
    """
    템플릿에 인스턴스 스펙을 채워 libvirt 도메인 XML을 생성합니다.

    Args:
        vm_name: 도메인 이름 (인스턴스 이름).
        vm_uuid: 도메인 UUID. provider_instance_id로도 사용됩니다.
        cpu_count: vCPU 수.
        ram_mb: 메모리 (MiB). XML에는 KiB로 기록됩니다.
        image_filepath: 인스턴스 전용 qcow2 디스크 경로.
        network_name: 연결할 libvirt 네트워크 이름.
        tags: description에 남길 인스턴스 태그.

    Raises:
        ProvisioningError: CPU 또는 메모리 값이 1 미만일 때.
    """
    if cpu_count < 1 or ram_mb < 1:
        raise ProvisioningError(f"invalid resources for '{vm_name}': cpu={cpu_count}, memory_mb={ram_mb}")

    return load_template().format(
        vm_name=escape(vm_name),
        vm_uuid=vm_uuid,
        description=escape(",".join(tags)),
        cpu_count=cpu_count,
        ram_kib=ram_mb * 1024,
        image_filepath=escape(image_filepath, {"'": "&apos;"}),
        network_name=escape(network_name, {"'": "&apos;"}),
    )
