"""
Checkpoint serialization for agent state.

Transient fields (retrieved passages) are left out of checkpoint storage.
They only matter between a tool call and its result, and a resumed
tool_result phase re-runs the tool call to get them back.

Usage:
    serde = CheckpointSerializer()
    type_, data = serde.dumps_typed(state)
    state = serde.loads_typed((type_, data))
"""

from typing import Any, Tuple

from langgraph.checkpoint.serde.jsonplus import JsonPlusSerializer


class CheckpointSerializer(JsonPlusSerializer):
    """
    JsonPlusSerializer that drops transient state fields.

    Fields excluded:
    - passages: RetrievedPassage objects for the current tool call

    Dropped fields come back as their empty value on load so every loaded
    state has the full AgentState shape.
    """

    EXCLUDED_FIELDS = {
        "passages": list,
    }

    def dumps_typed(self, value: Any) -> Tuple[str, bytes]:
        if isinstance(value, dict):
            filtered = {
                k: v for k, v in value.items()
                if k not in self.EXCLUDED_FIELDS
            }
            return super().dumps_typed(filtered)
        return super().dumps_typed(value)

    def loads_typed(self, data: Tuple[str, bytes]) -> Any:
        value = super().loads_typed(data)
        if isinstance(value, dict):
            for name, factory in self.EXCLUDED_FIELDS.items():
                value.setdefault(name, factory())
        return value
