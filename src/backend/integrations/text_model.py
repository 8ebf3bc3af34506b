"""
Plain text generation through the OpenAI Agents SDK.

Used for chat titles, artifact content and suggestions. The SDK picks up the
client registered with ``set_default_openai_client`` at startup.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from agents import Agent, Runner

TEXT_DELTA_EVENT = "response.output_text.delta"


class TextModel(Protocol):
    def stream_text(self, system: str, prompt: str) -> AsyncIterator[str]: ...

    async def generate_text(self, system: str, prompt: str) -> str: ...


class AgentTextModel:
    """Single-turn, tool-less agent bound to one model name."""

    def __init__(self, model: str, name: str = "TextGenerator"):
        self.model = model
        self.name = name

    def _agent(self, system: str) -> Agent:
        return Agent(name=self.name, model=self.model, instructions=system)

    async def stream_text(self, system: str, prompt: str) -> AsyncIterator[str]:
        result = Runner.run_streamed(self._agent(system), input=prompt)
        async for event in result.stream_events():
            if event.type == "raw_response_event" and getattr(event.data, "type", None) == TEXT_DELTA_EVENT:
                yield event.data.delta  # type: ignore[union-attr]

    async def generate_text(self, system: str, prompt: str) -> str:
        result = await Runner.run(self._agent(system), input=prompt)
        return str(result.final_output or "")
