"""
应用配置
从环境变量 / .env 读取配置
"""
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用设置"""

    # 应用基础配置
    APP_NAME: str = "ARI-PMS"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # 数据库配置
    DATABASE_URL: str = "sqlite:///./pms.db"
    SQLITE_BUSY_TIMEOUT: int = 30          # 秒，SQLite 写锁等待时间

    # ARI 配置
    DEFAULT_RATE_PLAN_CODE: str = "BASE"   # 未指定价格策略时使用的根策略代码
    DEFAULT_CURRENCY: str = "USD"
    MAX_DATE_RANGE_DAYS: int = 366         # 单次批量更新允许的最大天数

    # 报价缓存
    QUOTE_TTL_SECONDS: int = 1800

    # 幂等锁租约：PENDING 超过该时长视为已放弃，可被新请求接管
    IDEMPOTENCY_PENDING_TTL_SECONDS: int = 300

    model_config = ConfigDict(env_file=".env", case_sensitive=True)


# 全局设置实例
settings = Settings()
