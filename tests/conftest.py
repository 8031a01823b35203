# tests/conftest.py
import pytest

from cloudfleet.config import Settings
from cloudfleet.database.database import create_session_factory
from cloudfleet.database.db_init import initialize_db


@pytest.fixture
def settings(tmp_path) -> Settings:
    """재시도 대기 없이 빠르게 동작하도록 조정한 설정."""
    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir()
    key_path = tmp_path / "id_test"
    key_path.write_text("not-a-real-key")
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        worker_count=2,
        task_fanout=4,
        poll_interval=0.05,
        provider_retry_attempts=3,
        provider_backoff_base=0,
        provider_backoff_max=0,
        provider_call_timeout=5,
        provision_timeout=5,
        boot_poll_interval=0,
        payload_retry_attempts=3,
        ssh_private_key_path=str(key_path),
        upload_dir=str(upload_dir),
        webhook_timeout=1,
    )


@pytest.fixture
def session_factory(settings):
    """임시 SQLite 파일 DB를 만들고 테이블과 관리자 계정을 준비합니다."""
    factory = create_session_factory(settings.database_url)
    initialize_db(factory)
    yield factory
    factory.kw["bind"].dispose()
