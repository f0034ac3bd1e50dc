"""LLM-powered worker that calls an OpenAI-compatible chat completions API."""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, Optional

import openai
import structlog
from openai import AsyncOpenAI

from fleet.agents.base import WorkerAgent
from fleet.core.errors import ExecutionError, InvalidTaskInput
from fleet.core.models import Task, TaskResult

if TYPE_CHECKING:
    from fleet.core.context import FleetContext
    from fleet.core.models import Worker
    from fleet.services.budget import BudgetLedger

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[str, Optional[str]], Any]

# Anthropic, OpenRouter and Groq all expose OpenAI-compatible endpoints.
PROVIDER_BASE_URLS: Dict[str, Optional[str]] = {
    "anthropic": "https://api.anthropic.com/v1/",
    "openai": None,
    "openrouter": "https://openrouter.ai/api/v1",
    "groq": "https://api.groq.com/openai/v1",
}

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant agent in a multi-agent system."

SYSTEM_PROMPTS: Dict[str, str] = {
    "code_review": (
        "You are an expert code reviewer. Identify bugs, security issues and "
        "maintainability problems, and propose concrete improvements."
    ),
    "documentation": (
        "You are a technical writer. Produce accurate, well-structured "
        "documentation for the code and APIs you are given."
    ),
    "repo_manager": (
        "You are a repository maintainer. Analyse dependencies, flag "
        "vulnerabilities and dead code, and suggest safe updates."
    ),
    "tooling": (
        "You are a developer tooling specialist. Review build environments and "
        "CI pipelines and suggest practical improvements."
    ),
    "debugger": (
        "You are a senior debugging engineer. Trace errors to their root cause "
        "and propose minimal, well-reasoned fixes."
    ),
    "visualization": (
        "You are a software architect. Describe dependency graphs and "
        "architecture diagrams in Mermaid syntax."
    ),
}

TASK_TYPES: Dict[str, FrozenSet[str]] = {
    "code_review": frozenset({"review_pr", "analyze_diff", "suggest_improvements"}),
    "documentation": frozenset({"generate_api_docs", "generate_readme", "update_inline_docs"}),
    "repo_manager": frozenset(
        {"analyze_dependencies", "check_vulnerabilities", "detect_dead_code", "suggest_updates"}
    ),
    "tooling": frozenset(
        {"analyze_environment", "suggest_ci_improvements", "generate_install_script"}
    ),
    "debugger": frozenset({"trace_error", "analyze_stacktrace", "suggest_fix"}),
    "visualization": frozenset(
        {"generate_dependency_graph", "generate_architecture_diagram", "collect_metrics"}
    ),
}


def default_client_factory(api_key: str, base_url: Optional[str]) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=api_key, base_url=base_url)


class LLMAgent(WorkerAgent):
    """Worker that answers tasks with a chat completion.

    Credentials come from the worker's pool on every call. A credential the
    provider rejects (401/403) is quarantined and the attempt fails as a
    retryable execution error, so the retry picks the next credential.
    """

    def __init__(
        self,
        worker: Worker,
        ctx: FleetContext,
        ledger: BudgetLedger,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        super().__init__(worker, ctx, ledger)
        self._client_factory = client_factory or default_client_factory
        self._clients: Dict[str, Any] = {}
        metadata = worker.metadata
        self.system_prompt = metadata.get(
            "system_prompt", SYSTEM_PROMPTS.get(worker.agent_type, DEFAULT_SYSTEM_PROMPT)
        )
        self.temperature = float(metadata.get("temperature", 0.7))
        self.max_tokens = int(metadata.get("max_tokens", 4096))

    def build_prompt(self, task: Task) -> str:
        prompt = task.payload.get("prompt") or task.payload.get("content")
        if prompt:
            return str(prompt)
        return f"Task: {task.task_type}\n\n{json.dumps(task.payload, indent=2, default=str)}"

    async def process_task(self, task: Task) -> TaskResult:
        supported = TASK_TYPES.get(self.agent_type)
        if supported is not None and task.task_type not in supported:
            raise InvalidTaskInput(f"Unknown task type: {task.task_type}")

        provider = self.worker.provider
        api_key = self._ctx.credentials.require_key(self.agent_type, provider)
        client = self._client_for(api_key)
        try:
            response = await client.chat.completions.create(
                model=self.worker.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": self.build_prompt(task)},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            self._ctx.credentials.mark_key_failed(api_key)
            await self._discard_client(api_key)
            raise ExecutionError(f"AI API error: {exc.status_code} - credential rejected") from exc
        except openai.APIStatusError as exc:
            raise ExecutionError(f"AI API error: {exc.status_code} - {exc.message}") from exc
        except openai.APIError as exc:
            raise ExecutionError(f"AI API error: {exc.message}") from exc

        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0
        return TaskResult(
            content=response.choices[0].message.content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=self._ctx.credentials.calculate_cost(
                provider, self.worker.model, input_tokens, output_tokens
            ),
            model=self.worker.model,
        )

    def _client_for(self, api_key: str) -> Any:
        client = self._clients.get(api_key)
        if client is None:
            base_url = PROVIDER_BASE_URLS.get(self.worker.provider)
            client = self._client_factory(api_key, base_url)
            self._clients[api_key] = client
        return client

    async def _discard_client(self, api_key: str) -> None:
        client = self._clients.pop(api_key, None)
        if client is not None:
            await client.close()

    async def on_stop(self) -> None:
        """Close cached provider clients."""
        for api_key in list(self._clients):
            await self._discard_client(api_key)
