"""Execution adapter: runs the coding agent and normalizes its output.

The orchestrator only sees ``AdapterEvent`` values, so the agent backend
can be swapped (or faked in tests) without touching session handling.
``ClaudeAgentAdapter`` drives a multi-turn ``ClaudeSDKClient``: each input
message is sent with ``client.query()`` and answered by its own response
stream. Follow-up input is pulled lazily from an ``InputChannel``, so one
client conversation survives while the session waits for an answer.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Protocol

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
)

from codingbot.config import RuntimeConfig
from codingbot.models import AdapterEvent, AdapterEventKind, InputMessage

logger = logging.getLogger(__name__)


class AdapterError(RuntimeError):
    """The execution ended without a terminal result."""


class ExecutionAdapter(Protocol):
    """Anything that can run a prompt and yield ``AdapterEvent`` values.

    The stream ends after the ``result`` event.
    """

    def run(
        self,
        prompt: str | AsyncIterable[InputMessage],
        *,
        cwd: str | Path,
        allowed_tools: list[str] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[AdapterEvent]: ...


class ClaudeAgentAdapter:
    """Execution adapter backed by the Claude Agent SDK client."""

    def __init__(
        self,
        *,
        model: str | None = None,
        permission_mode: str = "acceptEdits",
        max_turns: int = 50,
        question_tool_names: list[str] | None = None,
    ):
        self.model = model
        self.permission_mode = permission_mode
        self.max_turns = max_turns
        self.question_tool_names = set(question_tool_names or ["AskUserQuestion"])

    @classmethod
    def from_config(cls, runtime: RuntimeConfig) -> "ClaudeAgentAdapter":
        return cls(
            model=runtime.model,
            permission_mode=runtime.permission_mode,
            max_turns=runtime.max_turns,
            question_tool_names=runtime.question_tool_names,
        )

    async def run(
        self,
        prompt: str | AsyncIterable[InputMessage],
        *,
        cwd: str | Path,
        allowed_tools: list[str] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[AdapterEvent]:
        """Run the conversation and yield events until its terminal result.

        A successful turn that raised a question is not terminal when the
        input is live: the next input message (the answer) starts another
        turn on the same client. Error results always end the run. If the
        input runs out first, the stream ends without a result.
        """
        options = ClaudeAgentOptions(
            cwd=str(cwd),
            model=self.model,
            permission_mode=self.permission_mode,
            max_turns=self.max_turns,
            allowed_tools=list(allowed_tools or []),
            system_prompt=system_prompt,
        )
        live = not isinstance(prompt, str)
        messages = prompt if live else _single(prompt)
        logger.debug("Starting execution in %s (model=%s)", cwd, self.model)

        async with ClaudeSDKClient(options=options) as client:
            async for message in messages:
                if message.reply_to:
                    logger.info("Sending answer to question %s", message.reply_to)
                await client.query(message.text)

                open_question = False
                async for sdk_message in client.receive_response():
                    for event in self._translate(sdk_message):
                        if event.kind is AdapterEventKind.QUESTION:
                            open_question = True
                        elif event.kind is AdapterEventKind.RESULT:
                            if event.success and open_question and live:
                                logger.debug("Turn ended with an open question in %s", cwd)
                                continue
                            yield event
                            return
                        yield event

        logger.warning("Input ended before the execution produced a result in %s", cwd)

    def _translate(self, message: object) -> list[AdapterEvent]:
        """Map one SDK message to zero or more adapter events."""
        if isinstance(message, AssistantMessage):
            events: list[AdapterEvent] = []
            text = "\n".join(
                block.text for block in message.content if isinstance(block, TextBlock)
            )
            if text:
                events.append(AdapterEvent(kind=AdapterEventKind.ASSISTANT_TEXT, text=text))
            for block in message.content:
                if not isinstance(block, ToolUseBlock):
                    continue
                if block.name in self.question_tool_names:
                    events.append(
                        AdapterEvent(
                            kind=AdapterEventKind.QUESTION,
                            text=render_question(block.input),
                            tool_name=block.name,
                            question_id=block.id,
                        )
                    )
                else:
                    events.append(
                        AdapterEvent(
                            kind=AdapterEventKind.TOOL_USE,
                            tool_name=block.name,
                            tool_input=json.dumps(block.input, indent=2, default=str),
                        )
                    )
            return events

        if isinstance(message, SystemMessage):
            if message.subtype == "init":
                return [
                    AdapterEvent(
                        kind=AdapterEventKind.SYSTEM_INIT,
                        tools=list(message.data.get("tools") or []),
                    )
                ]
            return []

        if isinstance(message, ResultMessage):
            text = message.result or ""
            # error_max_turns / error_during_execution may arrive with is_error unset
            success = message.subtype == "success" and not message.is_error
            return [
                AdapterEvent(
                    kind=AdapterEventKind.RESULT,
                    text=text,
                    success=success,
                    errors=[] if success else [text or message.subtype],
                )
            ]

        return []


def render_question(tool_input: dict) -> str:
    """Render an AskUserQuestion tool input as readable text."""
    questions = tool_input.get("questions")
    if not isinstance(questions, list) or not questions:
        return tool_input.get("question") or json.dumps(tool_input, indent=2, default=str)

    parts = []
    for q in questions:
        lines = []
        if q.get("header"):
            lines.append(f"**{q['header']}**")
        lines.append(q.get("question", ""))
        for option in q.get("options") or []:
            label = option.get("label", "")
            description = option.get("description")
            lines.append(f"- {label}: {description}" if description else f"- {label}")
        parts.append("\n".join(lines))
    return "\n\n".join(parts)


async def _single(text: str) -> AsyncIterator[InputMessage]:
    yield InputMessage(text=text)
