"""LLM-backed agent capability.

One LLMAgent instance serves one agent kind. Each execution makes a single
model call; retries are left to the orchestrator worker, so every provider
error is classified here as recoverable or fatal.
"""

from typing import Any

import structlog
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from agents.base import AgentRequest, AgentResult
from agents.prompts import build_user_prompt, get_system_prompt, output_root
from agents.utils import LLMClient, LLMResponse, extract_json_from_response
from config import settings
from errors import FatalAgentError, InvalidFilePathError, RecoverableAgentError
from models.schemas import AgentKind, GeneratedFile, LogSeverity, TokenUsage
from rate_limiter import RateLimitExceededError

logger = structlog.get_logger(__name__)

# Provider errors worth another attempt
_RECOVERABLE_PROVIDER_ERRORS = (
    RateLimitError,
    ServiceUnavailableError,
    InternalServerError,
    Timeout,
    APIConnectionError,
)

# Provider errors that will fail the same way on every attempt
_FATAL_PROVIDER_ERRORS = (AuthenticationError, BadRequestError)


def _strip_leading(path: str) -> str:
    path = path.strip().replace("\\", "/")
    while path.startswith("./") or path.startswith("/"):
        path = path[2:] if path.startswith("./") else path[1:]
    return path


class LLMAgent:
    """Generates one agent kind's files with a single LLM call.

    Attributes:
        agent_kind: The responsibility this agent covers
        llm_client: Client used for model calls
        model: LiteLLM model identifier
        stream: Stream the completion and report progress as output arrives
    """

    def __init__(
        self,
        agent_kind: AgentKind,
        llm_client: LLMClient,
        model: str | None = None,
        stream: bool = False,
    ) -> None:
        if agent_kind is AgentKind.ORCHESTRATOR:
            raise ValueError("The orchestrator kind cannot be an agent")
        self.agent_kind = agent_kind
        self.llm_client = llm_client
        self.model = model or settings.model_for(agent_kind.value)
        self.stream = stream

    def build_messages(self, request: AgentRequest) -> list[dict[str, Any]]:
        return [
            {"role": "system", "content": get_system_prompt(self.agent_kind)},
            {
                "role": "user",
                "content": build_user_prompt(request.config_slice, request.upstream_files),
            },
        ]

    async def execute(self, request: AgentRequest) -> AgentResult:
        request.raise_if_cancelled()
        request.report_progress(5)
        if request.attempt > 1:
            request.log(f"Starting attempt {request.attempt}", attempt=request.attempt)

        try:
            response = await self._complete(request)
        except RateLimitExceededError as e:
            raise RecoverableAgentError(str(e), agent_kind=self.agent_kind.value) from e
        except _RECOVERABLE_PROVIDER_ERRORS as e:
            raise RecoverableAgentError(
                f"{type(e).__name__}: {e}", agent_kind=self.agent_kind.value
            ) from e
        except _FATAL_PROVIDER_ERRORS as e:
            raise FatalAgentError(
                f"{type(e).__name__}: {e}", agent_kind=self.agent_kind.value
            ) from e

        request.raise_if_cancelled()
        request.report_progress(70)

        if response.finish_reason == "length":
            request.log(
                "Model output was truncated at the token limit",
                LogSeverity.WARNING,
            )

        files = self.parse_files(response.content, request.task_id)
        request.report_progress(90)
        request.log(f"Generated {len(files)} files", files=len(files))

        logger.info(
            "llm_agent_completed",
            run_id=request.run_id,
            task_id=request.task_id,
            agent_kind=self.agent_kind.value,
            files=len(files),
            latency_ms=response.metrics.latency_ms,
        )

        return AgentResult(
            files=files,
            usage=TokenUsage(
                input_tokens=response.metrics.input_tokens,
                output_tokens=response.metrics.output_tokens,
                llm_calls=1,
            ),
        )

    async def _complete(self, request: AgentRequest) -> LLMResponse:
        messages = self.build_messages(request)
        if not self.stream:
            return await self.llm_client.call(
                messages=messages,
                model=self.model,
                run_id=request.run_id,
                agent_kind=self.agent_kind.value,
            )

        # Streamed text only drives progress; files come from the full response.
        expected_chars = max(self.llm_client.max_tokens * 4, 1)
        received = 0

        def on_delta(delta: str) -> None:
            nonlocal received
            request.raise_if_cancelled()
            received += len(delta)
            request.report_progress(5 + 60 * min(received / expected_chars, 1.0))

        return await self.llm_client.stream(
            messages=messages,
            model=self.model,
            run_id=request.run_id,
            agent_kind=self.agent_kind.value,
            on_delta=on_delta,
        )

    def parse_files(self, content: str, task_id: str) -> list[GeneratedFile]:
        """Parse ``{"files": [{"path", "content"}]}`` out of the model output.

        Paths outside the agent's output root are moved under it.

        Raises:
            RecoverableAgentError: If the output is not the expected JSON shape.
        """
        parsed = extract_json_from_response(content)
        if parsed is None or not isinstance(parsed.get("files"), list):
            raise RecoverableAgentError(
                "Model output did not contain a JSON object with a 'files' list",
                agent_kind=self.agent_kind.value,
            )

        root = output_root(self.agent_kind)
        files: list[GeneratedFile] = []
        for index, entry in enumerate(parsed["files"]):
            if not isinstance(entry, dict):
                raise RecoverableAgentError(
                    f"File entry {index} is not an object",
                    agent_kind=self.agent_kind.value,
                )
            path = entry.get("path")
            file_content = entry.get("content")
            if not isinstance(path, str) or not isinstance(file_content, str):
                raise RecoverableAgentError(
                    f"File entry {index} needs string 'path' and 'content'",
                    agent_kind=self.agent_kind.value,
                )
            relative = _strip_leading(path)
            if not relative:
                raise InvalidFilePathError(path, "path cannot be empty")
            if root and not relative.startswith(root):
                relative = root + relative
            files.append(GeneratedFile(path=relative, content=file_content, task_id=task_id))

        if not files:
            raise RecoverableAgentError(
                "Model returned no files", agent_kind=self.agent_kind.value
            )
        return files
