"""Agent turn loop: bounded multi-turn exchange with the reasoning model.

``run_agent`` is an async generator. Each call starts an independent run
with a fresh conversation seeded by the user message; the generator is
single-pass and is closed by the consumer (``aclose``) on disconnect.

Per iteration the model is called with the full conversation and tool
catalog. Text blocks are emitted as ``response`` events; tool-use blocks are
emitted as ``tool_use``, dispatched in order, and emitted as ``tool_result``.
The assistant turn and all of its results are appended before the next
call, results in invocation order. A turn with no tool calls completes the
run. Hitting the iteration cap or any exception ends the run with ``error``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

import anthropic

from codebox.config import CodeboxConfig, ModelConfig
from codebox.dispatcher import ToolContext, ToolDispatcher

logger = logging.getLogger(__name__)

EVENT_RESPONSE = "response"
EVENT_TOOL_USE = "tool_use"
EVENT_TOOL_RESULT = "tool_result"
EVENT_ERROR = "error"
EVENT_COMPLETE = "complete"

ERROR_LIMIT_EXCEEDED = "limit_exceeded"
ERROR_EXTERNAL_SERVICE = "external_service_error"
ERROR_UNEXPECTED = "unexpected_error"


@dataclass(frozen=True)
class RunLimits:
    """Immutable bounds for one run."""

    max_iterations: int = 20
    max_tokens_per_call: int = 4096

    @classmethod
    def from_config(cls, config: ModelConfig) -> "RunLimits":
        return cls(max_iterations=config.max_iterations, max_tokens_per_call=config.max_tokens_per_call)


@dataclass
class AgentEvent:
    """One item of the run's event stream."""

    type: str
    content: str | None = None
    tool_name: str | None = None
    tool_input: Any = None
    tool_use_id: str | None = None
    tool_result: str | None = None
    error: str | None = None
    error_kind: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (EVENT_COMPLETE, EVENT_ERROR)

    def to_dict(self) -> dict:
        """Wire shape: camelCase keys, unset fields omitted."""
        data: dict[str, Any] = {"type": self.type}
        for key, value in (
            ("content", self.content),
            ("toolName", self.tool_name),
            ("toolInput", self.tool_input),
            ("toolUseId", self.tool_use_id),
            ("toolResult", self.tool_result),
            ("error", self.error),
            ("errorKind", self.error_kind),
        ):
            if value is not None:
                data[key] = value
        return data


def create_model_client(config: CodeboxConfig) -> anthropic.AsyncAnthropic:
    """Anthropic client, routed through the Databricks serving proxy when a host is set."""
    base_url = config.databricks.serving_base_url
    if base_url:
        # The proxy authenticates with Bearer instead of x-api-key
        return anthropic.AsyncAnthropic(
            api_key=config.model.api_key,
            base_url=base_url,
            default_headers={"Authorization": f"Bearer {config.model.api_key}"},
        )
    return anthropic.AsyncAnthropic(api_key=config.model.api_key or None)


def _block_to_param(block: Any) -> dict:
    """Convert a response content block back into a request message block."""
    block_type = getattr(block, "type", None)
    if block_type == "text":
        return {"type": "text", "text": block.text}
    if block_type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if hasattr(block, "model_dump"):
        return block.model_dump(exclude_none=True)
    return dict(block)


async def run_agent(
    message: str,
    context: ToolContext,
    *,
    client: Any = None,
    config: CodeboxConfig | None = None,
    limits: RunLimits | None = None,
    dispatcher: ToolDispatcher | None = None,
    system_prompt: str | None = None,
) -> AsyncIterator[AgentEvent]:
    """Drive one run and yield its events; the last event is always terminal."""
    config = config or CodeboxConfig.load()
    limits = limits or RunLimits.from_config(config.model)

    try:
        client = client or create_model_client(config)
        dispatcher = dispatcher or ToolDispatcher(context, config)
        tools = dispatcher.catalog()
        conversation: list[dict] = [{"role": "user", "content": message}]

        for iteration in range(1, limits.max_iterations + 1):
            request: dict[str, Any] = {
                "model": config.model.model,
                "max_tokens": limits.max_tokens_per_call,
                "tools": tools,
                "messages": conversation,
            }
            if system_prompt:
                request["system"] = system_prompt
            response = await client.messages.create(**request)
            logger.debug(
                "Iteration %d: stop_reason=%s blocks=%d",
                iteration, getattr(response, "stop_reason", None), len(response.content),
            )

            tool_results: list[dict] = []
            for block in response.content:
                block_type = getattr(block, "type", None)
                if block_type == "text":
                    yield AgentEvent(type=EVENT_RESPONSE, content=block.text)
                elif block_type == "tool_use":
                    yield AgentEvent(
                        type=EVENT_TOOL_USE,
                        tool_name=block.name,
                        tool_input=block.input,
                        tool_use_id=block.id,
                    )
                    result = await dispatcher.execute(block.name, block.input)
                    yield AgentEvent(
                        type=EVENT_TOOL_RESULT,
                        tool_name=block.name,
                        tool_use_id=block.id,
                        tool_result=result,
                    )
                    tool_results.append(
                        {"type": "tool_result", "tool_use_id": block.id, "content": result}
                    )

            if not tool_results:
                # end_turn, max_tokens, stop_sequence: nothing left to dispatch
                yield AgentEvent(type=EVENT_COMPLETE)
                return

            conversation.append(
                {"role": "assistant", "content": [_block_to_param(b) for b in response.content]}
            )
            conversation.append({"role": "user", "content": tool_results})

        logger.warning("Run stopped at iteration limit (%d)", limits.max_iterations)
        yield AgentEvent(
            type=EVENT_ERROR,
            error=f"Maximum iteration limit reached ({limits.max_iterations})",
            error_kind=ERROR_LIMIT_EXCEEDED,
        )
    except anthropic.APIError as e:
        logger.error("Model call failed: %s", e)
        yield AgentEvent(type=EVENT_ERROR, error=str(e) or type(e).__name__, error_kind=ERROR_EXTERNAL_SERVICE)
    except Exception as e:
        logger.exception("Agent run failed: %s", e)
        yield AgentEvent(
            type=EVENT_ERROR,
            error=str(e) or "Unknown error occurred",
            error_kind=ERROR_UNEXPECTED,
        )
