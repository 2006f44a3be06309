"""
Threadloom 主入口 - 交互式命令行
"""
import argparse
import asyncio
import json
import logging
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.styles import Style
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from .config_loader import ThreadloomConfig, load_config
from .core.agent_loop import Agent, AgentConfig, TurnOutcome, TurnStatus
from .core.anthropic_client import AnthropicClient
from .core.errors import ConfigError
from .core.llm_client import LLMBackend, LLMClient, RetryConfig
from .core.persistence import Persistence
from .core.policy import ApprovalMode, PolicyEngine
from .core.thread_store import ThreadStore
from .core.token_budget import TokenBudgetConfig
from .core.types import ApprovalDecision, EventType, NotificationType
from .tools.builtin import register_builtin_tools
from .tools.executor import ToolExecutor

console = Console()
logger = logging.getLogger(__name__)

# 自定义样式
style = Style.from_dict({
    'prompt': '#00aa00 bold',
})

MODE_MAP = {
    'plan': ApprovalMode.PLAN,
    'default': ApprovalMode.DEFAULT,
    'yolo': ApprovalMode.YOLO,
    'read_only': ApprovalMode.READ_ONLY,
}

DECISION_MAP = {
    'once': ApprovalDecision.ALLOW_ONCE,
    'session': ApprovalDecision.ALLOW_SESSION,
    'deny': ApprovalDecision.DENY,
}


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def create_backend(config: ThreadloomConfig) -> LLMBackend:
    """根据配置创建LLM后端"""
    llm = config.llm
    retry = RetryConfig(**llm.retry.model_dump())
    common = dict(
        context_window=llm.context_window,
        retry_config=retry,
        system_prompt=config.system_prompt,
    )
    if llm.provider == 'anthropic':
        return AnthropicClient(
            api_key=llm.api_key,
            model=llm.anthropic.model,
            max_tokens=llm.max_tokens or 4096,
            temperature=llm.temperature,
            streaming=llm.streaming,
            **common
        )
    provider_config = llm.active
    return LLMClient(
        api_key=llm.api_key,
        base_url=provider_config.base_url,
        model=provider_config.model,
        provider=llm.provider,
        temperature=llm.temperature,
        max_tokens=llm.max_tokens,
        streaming=llm.streaming,
        **common
    )


def create_token_budget(config: ThreadloomConfig) -> TokenBudgetConfig:
    budget = config.token_budget
    return TokenBudgetConfig(
        context_limit=budget.context_limit or config.llm.context_window,
        reserve_tokens=budget.reserve_tokens,
        warning_threshold=budget.warning_threshold,
        block_threshold=budget.block_threshold,
    )


class ThreadloomApp:
    """Threadloom 应用程序"""

    def __init__(self, config: ThreadloomConfig, thread_id: Optional[str] = None):
        self.config = config
        self.requested_thread_id = thread_id
        self.persistence = Persistence()
        self.session = PromptSession(style=style)
        self.agent: Optional[Agent] = None
        self._streamed = False

    def print_banner(self):
        """打印欢迎信息"""
        llm = self.config.llm
        console.print(Panel(
            f"LLM: [bold]{llm.provider}[/bold] | Model: [bold]{llm.active.model}[/bold]\n"
            f"Thread: [bold]{self.agent.thread_id}[/bold]",
            title="Threadloom",
            border_style="cyan",
        ))

    async def setup(self) -> bool:
        """初始化设置"""
        if not self.config.llm.api_key:
            console.print("[red]Error: API key not found![/red]")
            console.print("\nPlease set one of the following:")
            console.print("  1. Environment variable: OPENAI_API_KEY, GEMINI_API_KEY or ANTHROPIC_API_KEY")
            console.print("  2. Add api_key to config.yaml")
            return False

        await self.persistence.init(self.config.storage.database)
        thread_store = ThreadStore(self.persistence)

        executor = ToolExecutor(
            registry=register_builtin_tools(),
            policy=PolicyEngine(mode=MODE_MAP[self.config.agent.approval_mode]),
            timeout=self.config.agent.tool_timeout,
        )
        self.agent = Agent(AgentConfig(
            thread_id=self.requested_thread_id or thread_store.generate_thread_id(),
            backend=create_backend(self.config),
            tool_executor=executor,
            thread_store=thread_store,
            working_directory=self.config.agent.working_directory,
            system_prompt=self.config.system_prompt,
            max_turns=self.config.agent.max_turns,
            token_budget=create_token_budget(self.config),
            name=self.config.agent.name,
            streaming=self.config.llm.streaming,
        ))

        # 监听通知
        self.agent.notifications.on(NotificationType.THREAD_EVENT_ADDED, self._on_event_added)
        self.agent.notifications.on(NotificationType.AGENT_TOKEN, self._on_token)
        self.agent.notifications.on(NotificationType.APPROVAL_REQUESTED, self._on_approval_requested)
        self.agent.notifications.on(NotificationType.TOKEN_BUDGET_WARNING, self._on_budget_warning)
        self.agent.notifications.on(NotificationType.ERROR, self._on_error)

        await self.agent.start()
        # 启动时恢复的工具调用先执行完
        await self.agent.wait_for_idle()
        return True

    def _on_token(self, notification):
        self._streamed = True
        console.print(notification.data["token"], end="")

    async def _on_event_added(self, notification):
        event = notification.data["event"]
        if event.type == EventType.AGENT_MESSAGE:
            if self._streamed:
                console.print()
                self._streamed = False
            elif event.data.content:
                console.print(Markdown(event.data.content))
        elif event.type == EventType.TOOL_CALL:
            console.print(f"[dim]🔧 Calling: {event.data.name}[/dim]")
        elif event.type == EventType.TOOL_RESULT:
            if event.data.is_error:
                console.print(f"[red]Tool {event.data.status.value}: {event.data.text}[/red]")

    async def _on_approval_requested(self, notification):
        call_id = notification.data["tool_call_id"]
        call = await self.agent.thread_store.find_tool_call(self.agent.thread_id, call_id)
        arguments = json.dumps(call.arguments, ensure_ascii=False, indent=2) if call else "{}"
        console.print(Panel(
            f"Tool: [bold]{call.name if call else '?'}[/bold]\n{arguments}\n\n"
            f"/approve {call_id} <once|session|deny>",
            title="Approval Required",
            border_style="yellow",
        ))

    async def _on_budget_warning(self, notification):
        usage = notification.data["usage"]
        console.print(f"[yellow]Token budget: {usage.percent_used:.1f}% of {usage.context_limit} used[/yellow]")

    async def _on_error(self, notification):
        console.print(f"[red]Error: {notification.data.get('error')}[/red]")

    def _report(self, outcome: TurnOutcome) -> None:
        if outcome.status == TurnStatus.QUEUED:
            console.print(f"[dim]Queued ({outcome.message_id})[/dim]")
        elif outcome.status == TurnStatus.HALTED:
            console.print("[yellow]Stopped after a denied tool call[/yellow]")
        elif outcome.status == TurnStatus.MAX_TURNS_REACHED:
            console.print("[yellow]Maximum number of turns reached[/yellow]")
        elif outcome.status == TurnStatus.TOKEN_LIMIT_REACHED:
            console.print("[red]Token budget exhausted for this thread[/red]")

    async def run_interactive(self):
        """运行交互式会话"""
        if not await self.setup():
            return
        self.print_banner()
        console.print("\n[dim]Type /help for commands, /exit to quit[/dim]\n")

        try:
            while True:
                try:
                    user_input = (await self.session.prompt_async("You: ", style="class:prompt")).strip()
                    if not user_input:
                        continue

                    if user_input.startswith('/'):
                        if await self._handle_command(user_input):
                            break
                        continue

                    outcome = await self.agent.send_message(user_input)
                    self._report(outcome)
                    await self.agent.wait_for_idle()
                    console.print()

                except KeyboardInterrupt:
                    console.print("\n[green]Goodbye! 👋[/green]")
                    break
                except EOFError:
                    break
                except Exception as e:
                    console.print(f"[red]Error: {e}[/red]")
        finally:
            await self.shutdown()

    async def shutdown(self):
        if self.agent is not None:
            await self.agent.stop()
            await self.agent.backend.cleanup()
        await self.persistence.close()

    async def _handle_command(self, command: str) -> bool:
        """处理命令，返回 True 表示退出"""
        parts = command.split()
        cmd = parts[0].lower()
        args = parts[1:]

        if cmd in ('/exit', '/quit'):
            console.print("[green]Goodbye! 👋[/green]")
            return True

        elif cmd == '/help':
            help_text = """
# Available Commands

- `/exit`, `/quit` - Exit the application
- `/help` - Show this help message
- `/usage` - Show token usage for this thread
- `/queue` - Show queued messages
- `/pending` - List tool calls waiting for approval
- `/approve <call_id> <once|session|deny>` - Answer an approval request
- `/resume` - Re-dispatch unfinished tool calls and continue the turn
- `/mode <plan|default|yolo|read_only>` - Change approval mode
- `/events` - Show the thread's event log
            """
            console.print(Markdown(help_text))

        elif cmd == '/usage':
            usage = await self.agent.get_token_usage()
            console.print(
                f"Prompt: {usage.total_prompt_tokens}  Completion: {usage.total_completion_tokens}  "
                f"Total: {usage.total_tokens}/{usage.context_limit} ({usage.percent_used:.1f}%)"
            )

        elif cmd == '/queue':
            stats = self.agent.queue_stats()
            console.print(f"{stats.queue_length} queued ({stats.high_priority_count} high priority)")
            for message in self.agent.queue_contents():
                console.print(f"  • [{message.priority.value}] {message.content[:60]}")

        elif cmd == '/pending':
            pending = await self.agent.get_pending_approvals()
            if not pending:
                console.print("[dim]No pending approvals[/dim]")
            for item in pending:
                call = item["tool_call"]
                console.print(f"  • {item['tool_call_id']}: {call.name} {json.dumps(call.arguments, ensure_ascii=False)}")

        elif cmd == '/approve':
            if len(args) != 2 or args[1].lower() not in DECISION_MAP:
                console.print("[red]Usage: /approve <call_id> <once|session|deny>[/red]")
                return False
            outcome = await self.agent.handle_approval_response(args[0], DECISION_MAP[args[1].lower()])
            self._report(outcome)
            await self.agent.wait_for_idle()

        elif cmd == '/resume':
            await self.agent.wait_for_idle()
            outcome = await self.agent.resume()
            self._report(outcome)
            await self.agent.wait_for_idle()

        elif cmd == '/mode' and args:
            mode = MODE_MAP.get(args[0].lower())
            if mode:
                self.agent.tool_executor.policy.set_mode(mode)
                console.print(f"[green]Mode changed to: {args[0]}[/green]")
            else:
                console.print(f"[red]Unknown mode: {args[0]}[/red]")

        elif cmd == '/events':
            table = Table(title=f"Thread {self.agent.thread_id}")
            table.add_column("Time", style="dim")
            table.add_column("Type")
            table.add_column("Data")
            for event in await self.agent.get_events():
                data = json.dumps(event.to_dict()["data"], ensure_ascii=False)
                table.add_row(event.timestamp.strftime("%H:%M:%S"), event.type.value, data[:80])
            console.print(table)

        else:
            console.print(f"[red]Unknown command: {cmd}[/red]")

        return False


async def main():
    """主入口"""
    parser = argparse.ArgumentParser(description='Threadloom - event-sourced agent runtime')
    parser.add_argument('-c', '--config', default='config.yaml', help='Config file path')
    parser.add_argument('-t', '--thread', default=None, help='Resume an existing thread id')
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        return
    setup_logging(config.logging.level)

    app = ThreadloomApp(config, thread_id=args.thread)
    await app.run_interactive()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
