"""Core components"""
from .types import *
from .errors import (
    ThreadloomError, StorageUnavailableError, ThreadNotFoundError, ApprovalError,
    TurnCancelledError, AgentStoppedError, ConfigError
)
from .persistence import Persistence
from .thread_store import ThreadStore
from .conversation import build_conversation, replay_thread
from .token_budget import TokenBudgetConfig, TokenBudgetTracker, recommend
from .message_queue import MessageQueue, QueueStats
from .llm_client import LLMBackend, LLMClient, RetryConfig
from .anthropic_client import AnthropicClient
from .policy import PolicyEngine, ApprovalMode, ToolPolicy
from .agent_loop import Agent, AgentConfig, EventBus, TurnOutcome, TurnStatus
