from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# 모든 모델 클래스가 상속받을 Base 클래스
Base = declarative_base()


def create_session_factory(database_url: str):
    """
    DB URL로 엔진을 만들고 세션 팩토리를 반환합니다.

    워커 스레드가 여러 개이므로 리포지토리는 호출마다 짧은 세션을 엽니다.
    expire_on_commit=False로 설정하여 세션이 닫힌 뒤에도 객체 속성을 읽을 수 있습니다.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        # SQLite는 스레드 간 커넥션 공유를 허용하도록 설정해야 합니다.
        connect_args = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(database_url, connect_args=connect_args)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def utcnow() -> datetime:
    """DB에 저장할 naive UTC 시각. SQLite는 타임존 정보를 보존하지 않습니다."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
