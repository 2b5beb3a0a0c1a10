"""
应用配置
从环境变量 / .env 读取配置
"""
from pydantic import ConfigDict, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用设置"""

    # 应用基础配置
    APP_NAME: str = "LockStay"
    DEBUG: bool = False

    # 数据库配置
    DATABASE_URL: str = "sqlite:///./lockstay.db"

    # JWT 配置
    SECRET_KEY: str = "lockstay-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 480

    # 预订配置
    BOOKING_PAYMENT_HOLD_MINUTES: int = 15   # 待支付预订占用时段的时长
    BOOKING_CHECK_IN_GRACE_MINUTES: int = 5  # 入住时间允许早于当前时间的误差

    # 资源锁配置（房间级排他锁）
    # 租约需覆盖最长的 检查+写入 临界区，且必须大于等待超时
    RESOURCE_LOCK_TIMEOUT_SECONDS: float = 5.0
    RESOURCE_LOCK_TTL_SECONDS: int = 30
    RESOURCE_LOCK_POLL_INTERVAL: float = 0.05

    # 核销码 / 开锁码
    CODE_MAX_ATTEMPTS: int = 10
    QR_CODE_PATH: str = "/api/v1/hotel/verify"

    # 对账任务
    SCHEDULER_ENABLED: bool = True
    RECONCILE_INTERVAL_SECONDS: int = 60
    RECONCILE_BATCH_SIZE: int = 100

    # 分销提现
    WITHDRAW_MIN_AMOUNT: float = 10.0

    # 事件总线内存历史条数
    EVENT_HISTORY_SIZE: int = 200

    model_config = ConfigDict(env_file=".env", case_sensitive=True)

    @model_validator(mode="after")
    def check_lock_lease(self) -> "Settings":
        if self.RESOURCE_LOCK_TTL_SECONDS <= self.RESOURCE_LOCK_TIMEOUT_SECONDS:
            raise ValueError("RESOURCE_LOCK_TTL_SECONDS 必须大于 RESOURCE_LOCK_TIMEOUT_SECONDS")
        return self


# 全局设置实例
settings = Settings()
