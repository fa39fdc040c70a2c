# /crm_dialer/models/domain.py

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Optional, List, Dict, Any, Iterator, Union
from pydantic import BaseModel, Field

# Core data models flowing between the workflow engine and the dispatch layer.

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float, bool]

CONTACT_KEYS = ("id", "name", "phone", "email")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InputEvent(Mapping):
    """
    Read-only, flat view of one CRM event.

    Built once per inbound message and shared by every flow execution for
    that event, so it never changes after construction.
    """

    __slots__ = ("_data", "_custom_fields")

    def __init__(self, data: Optional[Dict[str, Scalar]] = None, custom_fields: Optional[Dict[str, Scalar]] = None):
        self._data = MappingProxyType(dict(data or {}))
        self._custom_fields = MappingProxyType(dict(custom_fields or {}))

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "InputEvent":
        """
        Flattens a bus payload: `custom_fields` are lifted to top-level keys
        (core keys win on conflict) and `contact` becomes `contact_<key>`.
        Non-scalar leftovers are dropped.
        """
        flat: Dict[str, Scalar] = {}
        custom: Dict[str, Scalar] = {}

        for key, value in payload.items():
            if key in ("custom_fields", "contact"):
                continue
            if _is_scalar(value):
                flat[key] = value

        raw_custom = payload.get("custom_fields")
        if isinstance(raw_custom, dict):
            for key, value in raw_custom.items():
                if not _is_scalar(value):
                    continue
                custom[str(key)] = value
                flat.setdefault(str(key), value)

        contact = payload.get("contact")
        if isinstance(contact, dict):
            for key in CONTACT_KEYS:
                value = contact.get(key)
                if _is_scalar(value):
                    flat.setdefault(f"contact_{key}", value)

        return cls(flat, custom)

    @property
    def custom_fields(self) -> Mapping:
        return self._custom_fields

    @property
    def lead_id(self) -> Optional[int]:
        # Producers send 0 for "no lead"; only positive ids address a CRM lead.
        lead_id = as_int(self._data.get("lead_id"))
        return lead_id if lead_id is not None and lead_id > 0 else None

    def __getitem__(self, key: str) -> Scalar:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"InputEvent({dict(self._data)!r})"


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def as_int(value: Any) -> Optional[int]:
    """Tolerant int coercion for ids coming from JSON (numbers or numeric strings)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return int(number) if number.is_integer() else None
    return None


class LeadUpdate(BaseModel):
    """Pending CRM lead update; merged per `lead_id` by the batch processor."""
    lead_id: int = Field(..., gt=0)
    fields: Dict[str, Any] = Field(default_factory=dict, description="Custom field id -> value")
    status_id: int = Field(default=0, ge=0)
    pipeline_id: int = Field(default=0, ge=0)
    received_at: datetime = Field(default_factory=utcnow)

    def merge(self, newer: "LeadUpdate") -> None:
        """Last write wins per field; ids only overwrite with a known (non-zero) value."""
        self.fields.update(newer.fields)
        if newer.status_id > 0:
            self.status_id = newer.status_id
        if newer.pipeline_id > 0:
            self.pipeline_id = newer.pipeline_id
        self.received_at = newer.received_at

    def to_crm_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.lead_id}
        if self.status_id > 0:
            payload["status_id"] = self.status_id
        if self.pipeline_id > 0:
            payload["pipeline_id"] = self.pipeline_id
        if self.fields:
            payload["custom_fields_values"] = [
                {"field_id": as_int(field_id) or field_id, "values": [{"value": value}]}
                for field_id, value in self.fields.items()
            ]
        payload["updated_at"] = int(self.received_at.timestamp())
        return payload


class Contact(BaseModel):
    """Contact as accepted by the dialer's bucket API."""
    phone: str = ""
    name: str = ""
    email: str = ""
    custom_data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_event(cls, event: Mapping) -> "Contact":
        return cls(
            phone=str(event.get("contact_phone") or ""),
            name=str(event.get("contact_name") or ""),
            email=str(event.get("contact_email") or ""),
        )


class OutboundMessage(BaseModel):
    """Message published on the bus for an action's topic."""
    entity_ids: List[int] = Field(default_factory=list)
    action_type: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
