"""
数据库配置 - 事务性存储
预订、设备槽位、佣金账户、优惠券计数全部落在同一个事务存储中
"""
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from lockstay.config import settings


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        # 多线程共享引擎，写锁等待交给 busy timeout
        return {"check_same_thread": False, "timeout": 30}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """依赖注入：获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory=None):
    """后台任务使用的独立会话"""
    factory = session_factory or SessionLocal
    db = factory()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """初始化数据库表"""
    from lockstay.models import ontology  # noqa
    Base.metadata.create_all(bind=bind or engine)
