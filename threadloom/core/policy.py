"""
策略引擎 - 决定工具调用是直接执行、需要审批还是拒绝
"""
import fnmatch
from enum import Enum
from typing import Dict, List, Optional, Set
from dataclasses import dataclass

from .types import ToolKind, MUTATOR_KINDS


class ApprovalMode(Enum):
    """批准模式"""
    PLAN = "plan"           # Plan模式：只允许读操作，其余需要审批
    DEFAULT = "default"     # 默认模式
    YOLO = "yolo"          # YOLO模式：自动允许
    READ_ONLY = "read_only" # 只读模式：拒绝有副作用的工具


class ToolPolicy(str, Enum):
    """单次工具调用的策略结论"""
    ALLOW = "allow"
    REQUIRE_APPROVAL = "require_approval"
    DENY = "deny"


@dataclass
class PolicyRule:
    """策略规则"""
    tool_pattern: str       # 工具名glob模式
    decision: ToolPolicy


DEFAULT_RULES = [
    PolicyRule("file_read", ToolPolicy.ALLOW),
    PolicyRule("*_read", ToolPolicy.ALLOW),
    PolicyRule("file_write", ToolPolicy.REQUIRE_APPROVAL),
    PolicyRule("*_delete", ToolPolicy.REQUIRE_APPROVAL),
    PolicyRule("shell*", ToolPolicy.REQUIRE_APPROVAL),
]


class PolicyEngine:
    """策略引擎"""

    def __init__(
        self,
        mode: ApprovalMode = ApprovalMode.DEFAULT,
        rules: Optional[List[PolicyRule]] = None
    ):
        self.mode = mode
        self._always_allow: Set[str] = set()
        self._always_deny: Set[str] = set()
        self._rules: List[PolicyRule] = list(DEFAULT_RULES if rules is None else rules)

    def set_mode(self, mode: ApprovalMode) -> None:
        self.mode = mode

    def add_rule(self, rule: PolicyRule) -> None:
        """新规则优先于已有规则"""
        self._rules.insert(0, rule)

    def add_always_allow(self, tool_name: str) -> None:
        """添加总是允许的工具（allow_session 审批也写入这里）"""
        self._always_deny.discard(tool_name)
        self._always_allow.add(tool_name)

    def add_always_deny(self, tool_name: str) -> None:
        self._always_allow.discard(tool_name)
        self._always_deny.add(tool_name)

    @property
    def always_allowed(self) -> Set[str]:
        return set(self._always_allow)

    def check(self, tool_name: str, tool_kind: ToolKind, arguments: Optional[Dict] = None) -> ToolPolicy:
        """
        检查工具调用是否符合策略

        Returns:
            ToolPolicy: ALLOW, REQUIRE_APPROVAL 或 DENY
        """
        is_mutator = tool_kind in MUTATOR_KINDS

        # 黑名单在任何模式下都生效
        if tool_name in self._always_deny:
            return ToolPolicy.DENY

        if self.mode == ApprovalMode.YOLO:
            return ToolPolicy.ALLOW

        if self.mode == ApprovalMode.READ_ONLY:
            return ToolPolicy.DENY if is_mutator else ToolPolicy.ALLOW

        if tool_name in self._always_allow:
            return ToolPolicy.ALLOW

        if self.mode == ApprovalMode.PLAN:
            if tool_kind in (ToolKind.READ, ToolKind.SEARCH, ToolKind.THINK):
                return ToolPolicy.ALLOW
            return ToolPolicy.REQUIRE_APPROVAL

        for rule in self._rules:
            if fnmatch.fnmatchcase(tool_name, rule.tool_pattern):
                return rule.decision

        # 默认：有副作用的操作需要审批
        if is_mutator:
            return ToolPolicy.REQUIRE_APPROVAL
        return ToolPolicy.ALLOW
