"""
Typed access to inference event fields.

Rules refer to event fields by name. Names are resolved through a closed
enum so that a rule can only ever address a field the event schema defines.
"""

from enum import Enum
from typing import Any, Mapping

# Returned by EventField.read when the record does not carry the field at all.
MISSING = object()


class FieldKind(Enum):
    """How values of a field are compared and transformed."""
    NUMERIC = "numeric"
    CATEGORICAL = "categorical"
    BOOLEAN = "boolean"


class EventField(Enum):
    """Fields of an inference event that rules may read or rewrite."""
    TENANT_ID = "tenant_id"
    ENVIRONMENT = "environment"
    MODEL = "model"
    PROMPT_CLASS = "prompt_class"
    TOKENS_IN = "tokens_in"
    TOKENS_OUT = "tokens_out"
    LATENCY_MS = "latency_ms"
    RETRIES = "retries"
    RETRY_REASON = "retry_reason"
    SUCCESS = "success"
    COST_USD = "cost_usd"

    @property
    def kind(self) -> FieldKind:
        return _FIELD_KINDS[self]

    @property
    def is_numeric(self) -> bool:
        return self.kind == FieldKind.NUMERIC

    def read(self, record: Any) -> Any:
        """Read this field from an event or a partial request mapping.

        Returns MISSING when the record has no such field.
        """
        if isinstance(record, Mapping):
            return record.get(self.value, MISSING)
        return getattr(record, self.value, MISSING)

    @classmethod
    def parse(cls, name: str) -> "EventField":
        """Resolve a field name, raising ValueError for unknown names."""
        try:
            return cls(name)
        except ValueError:
            valid = [field.value for field in cls]
            raise ValueError(f"Unknown event field '{name}'; must be one of: {valid}")


_FIELD_KINDS = {
    EventField.TENANT_ID: FieldKind.CATEGORICAL,
    EventField.ENVIRONMENT: FieldKind.CATEGORICAL,
    EventField.MODEL: FieldKind.CATEGORICAL,
    EventField.PROMPT_CLASS: FieldKind.CATEGORICAL,
    EventField.TOKENS_IN: FieldKind.NUMERIC,
    EventField.TOKENS_OUT: FieldKind.NUMERIC,
    EventField.LATENCY_MS: FieldKind.NUMERIC,
    EventField.RETRIES: FieldKind.NUMERIC,
    EventField.RETRY_REASON: FieldKind.CATEGORICAL,
    EventField.SUCCESS: FieldKind.BOOLEAN,
    EventField.COST_USD: FieldKind.NUMERIC,
}
