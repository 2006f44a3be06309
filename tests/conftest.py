"""
共享fixture - 内存SQLite持久化和Agent工厂
"""
import pytest
import pytest_asyncio

from threadloom.core.agent_loop import Agent, AgentConfig
from threadloom.core.persistence import Persistence
from threadloom.core.thread_store import ThreadStore
from threadloom.tools.builtin import register_builtin_tools
from threadloom.tools.executor import ToolExecutor


@pytest_asyncio.fixture
async def persistence():
    persistence = Persistence()
    await persistence.init(":memory:")
    yield persistence
    await persistence.close()


@pytest_asyncio.fixture
async def store(persistence):
    return ThreadStore(persistence)


@pytest.fixture
def make_agent(store, tmp_path):
    """创建绑定到测试线程的Agent"""

    def factory(backend, thread_id="tl_test", registry=None, policy=None, approval_gate=None, **kwargs):
        executor = ToolExecutor(
            registry=registry if registry is not None else register_builtin_tools(),
            policy=policy,
            approval_gate=approval_gate,
        )
        kwargs.setdefault("working_directory", tmp_path)
        return Agent(AgentConfig(
            thread_id=thread_id,
            backend=backend,
            tool_executor=executor,
            thread_store=store,
            **kwargs
        ))

    return factory
