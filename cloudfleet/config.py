# cloudfleet/config.py
from typing import List, Literal, Optional

from pydantic import Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cloudfleet.services.exceptions import ConfigurationError


class Settings(BaseSettings):
    """
    서버 전역 설정. 환경 변수 또는 .env 파일에서 읽어옵니다.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- 데이터베이스 ---
    database_url: str = Field(default="sqlite:///cloudfleet.db")

    # --- 로깅 ---
    service_name: str = Field(default="cloudfleet")
    log_format: Literal["json", "console"] = Field(default="console")
    log_level: str = Field(default="INFO")

    # --- HTTP 서버 ---
    host: str = Field(default="")
    port: int = Field(default=8000, ge=1, le=65535)

    # --- 워커 풀 ---
    worker_count: int = Field(default=4, ge=1)
    high_priority_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    task_fanout: int = Field(default=4, ge=1, description="태스크 하나 안에서 동시에 처리할 인스턴스 수")
    poll_interval: float = Field(default=2.0, gt=0)
    task_lock_timeout: int = Field(default=300, ge=1, description="태스크 잠금 만료 시간(초)")
    max_task_attempts: int = Field(default=10, ge=1)

    # --- 프로바이더 호출 ---
    provider_retry_attempts: int = Field(default=5, ge=1)
    provider_backoff_base: float = Field(default=1.0, ge=0)
    provider_backoff_max: float = Field(default=30.0, ge=0)
    provider_call_timeout: float = Field(default=60.0, gt=0)
    provision_timeout: float = Field(default=600.0, gt=0, description="인스턴스가 ready가 될 때까지 기다리는 최대 시간(초)")
    boot_poll_interval: float = Field(default=5.0, ge=0)

    # --- 페이로드 배포 (SSH) ---
    ssh_user: str = Field(default="root")
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_private_key_path: str = Field(default="~/.ssh/id_rsa")
    ssh_connect_timeout: float = Field(default=30.0, gt=0)
    payload_retry_attempts: int = Field(default=5, ge=1)
    payload_exec_timeout: float = Field(default=600.0, gt=0)
    payload_remote_dir: str = Field(default="/root")

    # --- 업로드 / 웹훅 ---
    upload_dir: str = Field(default="/tmp/cloudfleet-uploads")
    webhook_timeout: float = Field(default=10.0, gt=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v


class VirtFusionSettings(BaseSettings):
    """VIRTFUSION_ 접두사 환경 변수."""
    model_config = SettingsConfigDict(env_prefix="VIRTFUSION_", env_file=".env", case_sensitive=False, extra="ignore")

    api_token: str
    host: str
    user_id: int = 1
    package_id: int = 1
    hypervisor_id: Optional[int] = None
    operating_system_id: Optional[int] = None
    ssh_key_ids: List[int] = Field(default_factory=list)
    storage_gb: int = 20
    traffic_gb: int = 0


class DigitalOceanSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DIGITALOCEAN_", env_file=".env", case_sensitive=False, extra="ignore")

    token: str
    api_url: str = "https://api.digitalocean.com/v2"
    ssh_key_ids: List[int] = Field(default_factory=list)


class LibvirtSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LIBVIRT_", env_file=".env", case_sensitive=False, extra="ignore")

    uri: str = "qemu:///system"
    image_dir: str = "/var/lib/libvirt/images"
    use_sudo: bool = True


def load_provider_settings(settings_cls, provider_name: str):
    """
    프로바이더 설정을 읽어옵니다. 필수 값이 없으면 ConfigurationError로 변환합니다.

    Raises:
        ConfigurationError: 필수 환경 변수가 누락되었거나 형식이 잘못되었을 때.
    """
    try:
        return settings_cls()
    except PydanticValidationError as e:
        missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        prefix = settings_cls.model_config.get("env_prefix", "")
        names = ", ".join(f"{prefix}{m}".upper() for m in missing)
        raise ConfigurationError(f"Provider '{provider_name}' is not configured: {names}") from e
