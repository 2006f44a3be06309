"""
配置加载器 - 支持YAML配置文件，使用pydantic校验
"""
import os
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .core.errors import ConfigError


class ProviderSettings(BaseModel):
    model: str
    base_url: Optional[str] = None


class RetrySettings(BaseModel):
    max_retries: int = Field(10, ge=0, le=50)
    initial_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(30.0, ge=0)
    backoff_factor: float = Field(2.0, ge=1, le=10)
    jitter_factor: float = Field(0.1, ge=0, lt=1)


class LLMSettings(BaseModel):
    provider: Literal["openai", "gemini", "anthropic"] = "openai"
    api_key: Optional[str] = None
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    streaming: bool = False
    context_window: int = Field(200000, gt=0)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    openai: ProviderSettings
    gemini: ProviderSettings
    anthropic: ProviderSettings

    @property
    def active(self) -> ProviderSettings:
        return getattr(self, self.provider)


class AgentSettings(BaseModel):
    name: str = "threadloom"
    max_turns: int = Field(50, ge=1)
    approval_mode: Literal["default", "plan", "yolo", "read_only"] = "default"
    working_directory: Optional[str] = None
    tool_timeout: Optional[float] = Field(None, gt=0)


class TokenBudgetSettings(BaseModel):
    context_limit: Optional[int] = Field(None, gt=0)  # 未设置时使用后端的上下文窗口
    reserve_tokens: int = Field(0, ge=0)
    warning_threshold: float = Field(0.8, gt=0, le=1)
    block_threshold: float = Field(0.95, gt=0, le=1)


class StorageSettings(BaseModel):
    database: str = "~/.threadloom/threads.db"


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"


class ThreadloomConfig(BaseModel):
    llm: LLMSettings
    agent: AgentSettings = Field(default_factory=AgentSettings)
    token_budget: TokenBudgetSettings = Field(default_factory=TokenBudgetSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    system_prompt: str


API_KEY_ENV = {
    'openai': 'OPENAI_API_KEY',
    'gemini': 'GEMINI_API_KEY',
    'anthropic': 'ANTHROPIC_API_KEY',
}


def load_config(config_path: str = "config.yaml") -> ThreadloomConfig:
    """加载配置文件"""
    config = get_default_config()

    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                user_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if user_config:
            if not isinstance(user_config, dict):
                raise ConfigError(f"{config_path} must contain a mapping")
            # 合并配置
            config = deep_merge(config, user_config)

    # 从环境变量读取API密钥
    provider = config['llm'].get('provider')
    if not config['llm'].get('api_key') and provider in API_KEY_ENV:
        config['llm']['api_key'] = os.getenv(API_KEY_ENV[provider])

    if os.getenv('THREADLOOM_DB'):
        config['storage']['database'] = os.environ['THREADLOOM_DB']

    try:
        settings = ThreadloomConfig.model_validate(config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    # 展开路径中的 ~
    if settings.storage.database != ":memory:":
        settings.storage.database = os.path.expanduser(settings.storage.database)
    if settings.agent.working_directory:
        settings.agent.working_directory = os.path.expanduser(settings.agent.working_directory)
    return settings


def get_default_config() -> Dict[str, Any]:
    """获取默认配置"""
    return {
        'llm': {
            'provider': 'openai',
            'api_key': None,
            'openai': {
                'model': 'gpt-4o-mini',
                'base_url': None
            },
            'gemini': {
                'model': 'gemini-2.0-flash',
                'base_url': 'https://generativelanguage.googleapis.com/v1beta/openai/'
            },
            'anthropic': {
                'model': 'claude-sonnet-4-20250514'
            }
        },
        'agent': {
            'name': 'threadloom',
            'max_turns': 50,
            'approval_mode': 'default'
        },
        'token_budget': {
            'reserve_tokens': 0,
            'warning_threshold': 0.8,
            'block_threshold': 0.95
        },
        'storage': {
            'database': '~/.threadloom/threads.db'
        },
        'logging': {
            'level': 'WARNING'
        },
        'system_prompt': '''You are Threadloom, a helpful AI assistant with access to tools.

When using tools:
1. Explain your intent before calling a tool
2. Use the exact tool name and parameters
3. Wait for results before proceeding
4. Report the outcome to the user

Read a file with file_read before overwriting it with file_write.'''
    }


def deep_merge(base: Dict, update: Dict) -> Dict:
    """深度合并两个字典"""
    result = base.copy()
    for key, value in update.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def save_config(config: ThreadloomConfig, config_path: str = "config.yaml") -> None:
    """保存配置到文件（不写入API密钥）"""
    data = config.model_dump(exclude={'llm': {'api_key'}})
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(data, f, default_flow_style=False, allow_unicode=True)
