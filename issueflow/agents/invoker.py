"""LLM-backed agents and the production AgentInvoker.

An agent is a markdown prompt file (``<agents_dir>/<name>.md``). Its
system prompt is that file; the user message is the stage context. When
the orchestrator attaches a ToolSandbox the agent runs a function-calling
loop against it until the model stops requesting tools.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from issueflow.agents.base_agent import BaseAgent
from issueflow.core.config import AgentsConfig, LLMConfig
from issueflow.core.exceptions import AgentConfigNotFoundError, LLMError
from issueflow.core.models import AgentContext, AgentResult, UsageMetrics
from issueflow.llm.client import LLMMessage, LLMResponse, OpenRouterClient
from issueflow.tools.sandbox import ToolSandbox
from issueflow.tools.todo import TodoManager

_RULE = "=" * 60


def build_user_prompt(context: AgentContext, todo_prompt: Optional[str] = None) -> str:
    """Render the stage context as the agent's user message."""
    parts = [_RULE, "CONTEXT FOR THIS TASK:", _RULE, ""]
    if context.issue_url:
        parts.append(f"Issue URL: {context.issue_url}")
    parts.append(f"Issue Number: #{context.issue_number}")
    parts.append(f"Issue Title: {context.issue_title}")
    if context.issue_labels:
        parts.append(f"Labels: {context.issue_labels}")
    if context.issue_body:
        parts += ["", "Issue Description:", context.issue_body]
    if context.issue_comments:
        parts += ["", _RULE, "ISSUE COMMENTS:", _RULE, context.issue_comments]

    for key, output in context.previous_outputs.items():
        parts += ["", _RULE, f"{key.upper()}:", _RULE, output]

    if context.extra:
        parts += ["", _RULE, "ADDITIONAL CONTEXT:", _RULE]
        parts += [f"{key}: {json.dumps(value, default=str)}" for key, value in context.extra.items()]

    if todo_prompt:
        parts += ["", _RULE, todo_prompt]

    parts += ["", _RULE, "Please complete your analysis based on the context above."]
    return "\n".join(parts)


class PromptAgent(BaseAgent):
    """One agent defined by a markdown prompt and served by an LLM."""

    def __init__(
        self,
        name: str,
        system_prompt: str,
        client: OpenRouterClient,
        model: str,
        llm_config: LLMConfig,
    ):
        super().__init__(name=name)
        self.system_prompt = system_prompt
        self.client = client
        self.model = model
        self.llm_config = llm_config

    def process(self, context: AgentContext, sandbox: Optional[ToolSandbox] = None) -> AgentResult:
        todo_prompt = None
        if sandbox is not None:
            if context.todo_state is not None:
                sandbox.load_todo_state(context.todo_state)
            todo_prompt = sandbox.todo_manager.to_prompt()
        elif context.todo_state is not None:
            todos = TodoManager(context.task_id, context.issue_number)
            todos.load_state(context.todo_state)
            todo_prompt = todos.to_prompt()

        messages = [
            LLMMessage(role="system", content=self.system_prompt),
            LLMMessage(role="user", content=build_user_prompt(context, todo_prompt)),
        ]
        usage = UsageMetrics()

        if sandbox is None:
            response = self.client.complete(messages, model=self.model)
            _add_usage(usage, response)
            return AgentResult(agent_name=self.name, success=True, output=response.content, usage=usage)

        output = self._tool_loop(messages, sandbox, usage)
        return AgentResult(
            agent_name=self.name,
            success=True,
            output=output,
            usage=usage,
            todo_state=sandbox.get_todo_state(),
        )

    def _tool_loop(self, messages: list[LLMMessage], sandbox: ToolSandbox, usage: UsageMetrics) -> str:
        transcript: list[str] = []
        for round_number in range(1, self.llm_config.max_tool_rounds + 1):
            response = self.client.complete(messages, model=self.model, tools=sandbox.tool_schemas)
            _add_usage(usage, response)
            if response.content:
                transcript.append(response.content)
            if not response.tool_calls:
                return "\n\n".join(transcript)

            messages.append(LLMMessage(role="assistant", content=response.content or None,
                                       tool_calls=response.tool_calls))
            for call in response.tool_calls:
                result = sandbox.execute(call.name, call.arguments)
                self.logger.debug("[%s] round %d: %s -> %s", self.name, round_number, call.name, result.success)
                messages.append(LLMMessage(
                    role="tool",
                    content=result.model_dump_json(exclude_none=True),
                    tool_call_id=call.id,
                ))

        raise LLMError(f"{self.name} exceeded {self.llm_config.max_tool_rounds} tool rounds")


class LLMAgentInvoker:
    """AgentInvoker that loads prompt agents from disk and runs them on OpenRouter."""

    def __init__(
        self,
        client: OpenRouterClient,
        llm_config: Optional[LLMConfig] = None,
        agents_config: Optional[AgentsConfig] = None,
    ):
        self.client = client
        self.llm_config = llm_config or LLMConfig()
        self.agents_config = agents_config or AgentsConfig()
        self.agents_dir = Path(self.agents_config.agents_dir)
        self._agents: dict[str, PromptAgent] = {}

    def invoke(
        self,
        agent_name: str,
        context: AgentContext,
        sandbox: Optional[ToolSandbox] = None,
    ) -> AgentResult:
        try:
            agent = self.get_agent(agent_name)
        except AgentConfigNotFoundError as e:
            return AgentResult(agent_name=agent_name, success=False, error=str(e))
        return agent.run(context, sandbox)

    def get_agent(self, agent_name: str) -> PromptAgent:
        if agent_name not in self._agents:
            path = self.agents_dir / f"{agent_name}.md"
            if not path.is_file():
                raise AgentConfigNotFoundError(f"Agent config not found: {path}")
            self._agents[agent_name] = PromptAgent(
                name=agent_name,
                system_prompt=path.read_text(encoding="utf-8"),
                client=self.client,
                model=self.agents_config.get_model(agent_name, self.llm_config.default_model),
                llm_config=self.llm_config,
            )
        return self._agents[agent_name]


def _add_usage(usage: UsageMetrics, response: LLMResponse) -> None:
    usage.input_tokens += response.input_tokens
    usage.output_tokens += response.output_tokens
    usage.total_tokens += response.tokens_used or (response.input_tokens + response.output_tokens)
