# registry.py
# Output type registry: tool name -> (decoder, concrete output type).
#
# Each flow works on its own copy, so entries are registered before the
# flow runs and only read afterwards.
# Lookups never fall back to a generic output; an unknown tool is a
# DecodeError, as is a decoder that raises or returns the wrong type.

from typing import Any, Callable

from toolflow.errors import DecodeError, UnregisteredToolError
from toolflow.models import SeedOutput, ToolOutput

Decoder = Callable[[dict[str, Any], int], ToolOutput]

SEED_TOOL = "initial_input"


def _seed_decoder(data: dict[str, Any], round: int) -> SeedOutput:
    return SeedOutput(data=dict(data), round=round)


def model_decoder(model: type[ToolOutput]) -> Decoder:
    """Decoder that validates raw data straight into a pydantic output model."""

    def decode(data: dict[str, Any], round: int) -> ToolOutput:
        return model.model_validate({**data, "round": round})

    return decode


class OutputRegistry:
    """Maps tool names to the decoder and type tag of their output."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[Decoder, type[ToolOutput]]] = {}
        self.register(SEED_TOOL, _seed_decoder, SeedOutput)

    def register(self, tool_name: str, decoder: Decoder, output_type: type[ToolOutput]) -> None:
        if not (isinstance(output_type, type) and issubclass(output_type, ToolOutput)):
            raise TypeError(f"Output type for '{tool_name}' must subclass ToolOutput.")
        self._entries[tool_name] = (decoder, output_type)

    def register_model(self, tool_name: str, model: type[ToolOutput]) -> None:
        self.register(tool_name, model_decoder(model), model)

    def is_registered(self, tool_name: str) -> bool:
        return tool_name in self._entries

    def get_type(self, tool_name: str) -> type[ToolOutput]:
        try:
            return self._entries[tool_name][1]
        except KeyError:
            raise UnregisteredToolError(tool_name) from None

    def create(self, tool_name: str, data: dict[str, Any], round: int) -> ToolOutput:
        """
        Decode raw output for `tool_name` into its registered type.

        Raises UnregisteredToolError if nothing is registered and DecodeError
        if the decoder fails or returns an instance of another type.
        """
        entry = self._entries.get(tool_name)
        if entry is None:
            raise UnregisteredToolError(tool_name)

        decoder, output_type = entry
        try:
            output = decoder(data, round)
        except Exception as exc:
            raise DecodeError(tool_name, str(exc)) from exc

        if not isinstance(output, output_type):
            raise DecodeError(
                tool_name,
                f"decoder returned {type(output).__name__}, expected {output_type.__name__}",
            )
        return output

    def copy(self) -> "OutputRegistry":
        """Independent registry holding the same entries."""
        clone = OutputRegistry()
        clone._entries = dict(self._entries)
        return clone

    @property
    def registered_tools(self) -> list[str]:
        return list(self._entries)

    @property
    def registered_types(self) -> dict[str, type[ToolOutput]]:
        return {name: entry[1] for name, entry in self._entries.items()}


default_registry = OutputRegistry()
