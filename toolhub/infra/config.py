"""Configuration management loaded from the environment."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file from project root
# This ensures dotenv works regardless of where the script is run from
project_root = Path(__file__).parent.parent.parent
env_file = project_root / ".env"

# override=False means existing environment variables take precedence
load_dotenv(dotenv_path=env_file, override=False)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


class Config:
    """Application configuration."""
    # Application
    APP_ENV: str = os.getenv("APP_ENV", "development")
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"

    # Remote tool servers
    MCP_CONFIG_PATH: str = os.getenv("TOOLHUB_MCP_CONFIG_PATH", ".mcp.json")
    MCP_TOOLS_PATH: str = os.getenv("TOOLHUB_MCP_TOOLS_PATH", ".mcp.tools.json")
    DISCOVERY_CACHE_TTL: int = _env_int("TOOLHUB_DISCOVERY_CACHE_TTL", 3600)
    DISCOVERY_REFRESH_WAIT: float = _env_float("TOOLHUB_DISCOVERY_REFRESH_WAIT", 2.0)

    # Tool execution
    TOOL_EXECUTION_TIMEOUT: float = _env_float("TOOL_EXECUTION_TIMEOUT", 30.0)
    TOOL_MAX_ATTEMPTS: int = _env_int("TOOL_MAX_ATTEMPTS", 3)
    TOOL_RETRY_INITIAL_DELAY: float = _env_float("TOOL_RETRY_INITIAL_DELAY", 0.25)
    TOOL_RETRY_MAX_DELAY: float = _env_float("TOOL_RETRY_MAX_DELAY", 4.0)

    # Background (queued) tools
    QUEUE_BACKEND: str = os.getenv("TOOLHUB_QUEUE_BACKEND", "local")  # "local" | "rq"
    QUEUE_NAME: str = os.getenv("TOOLHUB_QUEUE_NAME", "ai-functions")
    WORKER_POOL_SIZE: int = _env_int("TOOLHUB_WORKER_POOL_SIZE", 4)

    # Redis (rq backend)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")


config = Config()
