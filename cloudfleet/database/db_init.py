from .database import Base
from .models import User, UserRole
from cloudfleet.logging_config import get_logger

logger = get_logger(__name__)


def initialize_db(session_factory):
    """
    DB 테이블을 생성하고, 기본 관리자 계정을 삽입합니다.
    이미 사용자가 존재하면 기본 데이터 삽입은 건너뜁니다.
    """
    engine = session_factory.kw["bind"]
    Base.metadata.create_all(bind=engine)
    logger.info("db_tables_created", url=str(engine.url))

    with session_factory() as db:
        if db.query(User).first():
            logger.info("db_seed_skipped", reason="users already exist")
            return

        try:
            db.add(User(username="admin", email="", role=UserRole.ADMIN))
            db.commit()
            logger.info("db_seed_completed")
        except Exception:
            db.rollback()
            logger.exception("db_seed_failed")
            raise
