from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache, wraps
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./lane_checkin.db"

    # 會員號碼範圍（例如 "1000-1999,5000-5999"），落在範圍內才可租 GYM_LOCKER
    gym_locker_eligible_ranges: str = ""
    membership_scan_pattern: str = r"\d+"

    # Demo 模式不收逾時費也不停權
    demo_mode: bool = False

    checkout_claim_ttl_seconds: int = 120
    stay_hours: int = 6
    ban_days: int = 30
    waitlist_eta_buffer_minutes: int = 15


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()

# SQLite 需要特殊設定：connect_args={"check_same_thread": False}
# 這允許多執行緒存取同一個 SQLite 連線（FastAPI 的多執行緒環境需要）
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {},
    pool_pre_ping=True
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    FastAPI dependency：提供 Database Session

    使用 yield 確保 session 在請求結束後會被關閉
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _find_session(args, kwargs):
    db = None
    if args and isinstance(args[0], Session):
        db = args[0]
    elif 'db' in kwargs:
        db = kwargs['db']
    return db


def transactional(func):
    """
    Transaction decorator：確保資料庫操作的原子性

    使用方式：
        @transactional
        def some_business_logic(db: Session, ...):
            # 所有 DB 操作都在一個 transaction 內
            session = LaneSession(...)
            db.add(session)
            # 不需要手動 commit，decorator 會處理

    如果函式內發生異常：
        - 自動 rollback
        - 異常會被重新拋出（讓上層處理）

    注意：
        - 第一個參數必須是 db: Session
        - 不要在函式內手動 commit（decorator 會處理）
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = _find_session(args, kwargs)

        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper


def serializable(func):
    """
    Serializable transaction decorator

    用於需要跨多張表一致性視圖的操作（簽約、退房完成、會員購買完成），
    防止兩條 lane 同時搶最後一間房造成的 write skew。

    注意：
        - isolation level 只能在 transaction 開始前設定，
          若 session 已經在 transaction 內則沿用原本的 isolation level
        - 其餘行為與 @transactional 相同（commit / rollback / re-raise）
    """
    inner = transactional(func)

    @wraps(func)
    def wrapper(*args, **kwargs):
        db = _find_session(args, kwargs)
        if db is not None and not db.in_transaction():
            db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
        elif db is not None:
            logger.debug(f"{func.__name__} joined an open transaction; isolation level unchanged")
        return inner(*args, **kwargs)

    return wrapper
