from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class GenerationResult:
    text: str
    # Usage as reported by the provider; billing is computed from these, never from estimates.
    input_units: int
    output_units: int
    finish_reason: str | None = None


class LLMProvider(Protocol):
    async def generate(
        self,
        *,
        api_key: str,
        model_key: str,
        prompt: str,
        system_instruction: str | None = None,
        max_output_units: int = 8192,
        json_output: bool = False,
    ) -> GenerationResult:
        ...
