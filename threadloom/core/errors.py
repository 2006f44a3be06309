"""
异常类型
"""


class ThreadloomError(Exception):
    """所有Threadloom异常的基类"""


class StorageUnavailableError(ThreadloomError):
    """持久化层不可用（未初始化、已关闭或数据库错误）"""

    def __init__(self, message: str = "Storage is unavailable"):
        super().__init__(message)


class ThreadNotFoundError(ThreadloomError):
    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Thread not found: {thread_id}")


class ApprovalError(ThreadloomError):
    """审批握手无法定位对应的工具调用"""


class TurnCancelledError(ThreadloomError):
    """进行中的后端调用被 stop() 取消"""

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Turn cancelled for thread {thread_id}")


class AgentStoppedError(ThreadloomError):
    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Agent for thread {thread_id} is stopped")


class ConfigError(ThreadloomError):
    """配置文件无效"""
