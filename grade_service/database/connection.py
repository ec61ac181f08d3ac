# 数据库连接配置
from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool
import os
import logging
from typing import Generator

# 日志配置
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# 数据库连接配置
DATABASE_HOST = os.getenv("DATABASE_HOST", "127.0.0.1")
DATABASE_PORT = os.getenv("DATABASE_PORT", "3306")
DATABASE_USER = os.getenv("DATABASE_USER", "grade_service")
DATABASE_PASSWORD = os.getenv("DATABASE_PASSWORD", "")
DATABASE_NAME = os.getenv("DATABASE_NAME", "grade_service")


def build_database_url() -> str:
    """构建数据库URL，DATABASE_URL优先"""
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url
    return (
        f"mysql+pymysql://{DATABASE_USER}:{DATABASE_PASSWORD}"
        f"@{DATABASE_HOST}:{DATABASE_PORT}/{DATABASE_NAME}"
        "?charset=utf8mb4"
    )


DATABASE_URL = build_database_url()

# 创建数据库引擎（连接按需建立，导入时不连接数据库）
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        echo=False,
        future=True,
    )
else:
    engine = create_engine(
        DATABASE_URL,
        poolclass=QueuePool,
        pool_size=20,                    # 连接池大小
        max_overflow=30,                 # 最大溢出连接
        pool_pre_ping=True,              # 连接健康检查
        pool_recycle=3600,               # 连接回收时间(1小时)
        pool_timeout=30,                 # 获取连接超时(秒)
        echo=False,
        future=True,
    )

# 创建会话工厂
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,
    future=True
)

# 创建声明性基类
Base = declarative_base()


def get_db() -> Generator:
    """获取数据库会话（每个请求独立会话）"""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database session error: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


def test_connection() -> bool:
    """测试数据库连接"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("Database connection successful")
            return True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")
        return False


def create_tables():
    """创建所有表"""
    # 注册模型到元数据
    from . import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=engine)
        logger.info("All tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create tables: {str(e)}")
        raise
