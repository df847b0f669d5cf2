from __future__ import annotations

from dataclasses import dataclass

from creditmeter.core.errors import UpstreamProviderError
from creditmeter.providers.llm.base import GenerationResult


@dataclass(frozen=True)
class FakeCall:
    api_key: str
    model_key: str
    prompt: str
    system_instruction: str | None
    max_output_units: int
    json_output: bool


class FakeLLMProvider:
    def __init__(
        self,
        response: str = "This is a fake response.",
        *,
        input_units: int | None = None,
        output_units: int | None = None,
        failing_keys: set[str] | None = None,
        failure_kind: str = "quota",
    ) -> None:
        # Deterministic response and usage keep billing tests stable without external calls.
        self._response = response
        self._input_units = input_units
        self._output_units = output_units
        self._failing_keys = set(failing_keys or ())
        self._failure_kind = failure_kind
        self.calls: list[FakeCall] = []

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
        self.calls.append(
            FakeCall(
                api_key=api_key,
                model_key=model_key,
                prompt=prompt,
                system_instruction=system_instruction,
                max_output_units=max_output_units,
                json_output=json_output,
            )
        )
        if api_key in self._failing_keys:
            raise UpstreamProviderError(
                "Fake provider failure", kind=self._failure_kind, status_code=429
            )
        # Roughly four characters per unit when no fixed usage is configured.
        input_units = self._input_units if self._input_units is not None else max(1, len(prompt) // 4)
        output_units = (
            self._output_units if self._output_units is not None else max(1, len(self._response) // 4)
        )
        return GenerationResult(
            text=self._response,
            input_units=input_units,
            output_units=min(output_units, max_output_units),
            finish_reason="STOP",
        )
