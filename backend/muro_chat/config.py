"""配置管理"""
import os
from pathlib import Path
from dotenv import load_dotenv

# 显式加载 backend/.env 文件（确保无论从哪个目录启动都能找到）
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """应用配置"""

    # OpenAI 生成服务（唯一的外部凭证，缺失时在生成阶段报 "configuration error"）
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or None
    OPENAI_MAX_TOKENS = int(os.getenv("OPENAI_MAX_TOKENS", "1024"))
    OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))

    # 数据库
    DATABASE_PATH = os.getenv("DATABASE_PATH", "./data/chats.db")

    # 消息限制
    MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", "10000"))

    # 日志
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_JSON = _get_bool("LOG_JSON", "true")

    # CORS（逗号分隔）
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


config = Config()
