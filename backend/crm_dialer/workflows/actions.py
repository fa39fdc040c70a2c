# /crm_dialer/workflows/actions.py

from collections.abc import Mapping
from typing import Any, Dict, Optional, Protocol

import structlog

from crm_dialer.errors import DispatchError, UnsupportedActionError
from crm_dialer.models.domain import Contact, InputEvent, LeadUpdate, OutboundMessage, as_int
from crm_dialer.utils.metrics import action_dispatch_counter
from crm_dialer.workflows.conditions import canonical_text
from crm_dialer.workflows.definitions import (
    ACTION_TOPICS,
    LEAD_TARGETED_ACTIONS,
    UPDATE_LEAD_ACTION,
)

# Translates action nodes into outbound bus messages, or into pending lead
# updates for the batch processor. Nothing here waits on the dialer or CRM.

logger = structlog.get_logger(__name__)


class MessagePublisher(Protocol):
    async def publish(self, subject: str, payload: Dict[str, Any]) -> None: ...


class LeadUpdateSink(Protocol):
    async def add_update(self, update: LeadUpdate) -> None: ...


class ActionDispatcher:
    def __init__(self, bus: MessagePublisher, batch_processor: LeadUpdateSink):
        self.bus = bus
        self.batch_processor = batch_processor
        self._builders = {
            "send_to_dialer": self._send_to_dialer,
            "add_to_bucket": self._add_to_bucket,
            "change_priority": self._change_priority,
            "change_scheduler_step": self._change_scheduler_step,
            "remove_from_dialer": self._remove_from_dialer,
            "add_note": self._add_note,
        }

    async def dispatch(self, action_type: Optional[str], parameters: Mapping, event: InputEvent) -> None:
        """
        Executes one action for an event.

        Raises UnsupportedActionError for unknown types and DispatchError when
        the action cannot be handed off (missing lead, bus failure).
        """
        if action_type != UPDATE_LEAD_ACTION and action_type not in self._builders:
            action_dispatch_counter.labels(action_type="unknown", status="unsupported").inc()
            raise UnsupportedActionError(action_type)

        lead_id = event.lead_id
        log = logger.bind(action_type=action_type, lead_id=lead_id)

        if action_type in LEAD_TARGETED_ACTIONS and lead_id is None:
            action_dispatch_counter.labels(action_type=action_type, status="invalid").inc()
            raise DispatchError(
                f"Action '{action_type}' requires a positive lead_id on the event (got {event.get('lead_id')!r})",
                action_type=action_type,
            )

        if action_type == UPDATE_LEAD_ACTION:
            await self.batch_processor.add_update(self._build_lead_update(lead_id, parameters))
            action_dispatch_counter.labels(action_type=action_type, status="queued").inc()
            log.info("lead_update_queued")
            return

        message = OutboundMessage(
            entity_ids=[lead_id] if lead_id is not None else [],
            action_type=action_type,
            parameters=self._builders[action_type](parameters, event),
        )
        topic = ACTION_TOPICS[action_type]
        try:
            await self.bus.publish(topic, message.model_dump(mode="json"))
        except Exception as e:
            action_dispatch_counter.labels(action_type=action_type, status="error").inc()
            log.error("action_publish_failed", topic=topic, error=str(e))
            raise DispatchError(f"Failed to publish '{action_type}' to {topic}: {e}", action_type=action_type) from e

        action_dispatch_counter.labels(action_type=action_type, status="published").inc()
        log.info("action_published", topic=topic)

    # ---------------- Payload builders ---------------- #

    @staticmethod
    def _build_lead_update(lead_id: int, parameters: Mapping) -> LeadUpdate:
        fields = parameters.get("fields")
        return LeadUpdate(
            lead_id=lead_id,
            fields=dict(fields) if isinstance(fields, Mapping) else {},
            status_id=max(as_int(parameters.get("status_id")) or 0, 0),
            pipeline_id=max(as_int(parameters.get("pipeline_id")) or 0, 0),
        )

    @staticmethod
    def _crm_references(event: InputEvent) -> Dict[str, Any]:
        refs = {}
        if event.lead_id is not None:
            refs["amocrm_lead_id"] = event.lead_id
        contact_id = as_int(event.get("contact_id"))
        if contact_id is not None:
            refs["amocrm_contact_id"] = contact_id
        return refs

    def _send_to_dialer(self, parameters: Mapping, event: InputEvent) -> Dict[str, Any]:
        contact = Contact.from_event(event)
        contact.custom_data.update(self._crm_references(event))
        return {
            "scheduler_id": canonical_text(parameters.get("scheduler_id")),
            "campaign_id": canonical_text(parameters.get("campaign_id")),
            "bucket_id": canonical_text(parameters.get("bucket_id")),
            "contact": contact.model_dump(),
        }

    def _add_to_bucket(self, parameters: Mapping, event: InputEvent) -> Dict[str, Any]:
        priority = as_int(parameters.get("priority")) or 0
        scheduler_step = as_int(parameters.get("scheduler_step")) or 0

        contact = Contact.from_event(event)
        contact.custom_data.update(self._crm_references(event))
        contact.custom_data["priority"] = priority
        contact.custom_data["scheduler_step"] = scheduler_step
        contact.custom_data.update(event.custom_fields)

        return {
            "bucket_id": canonical_text(parameters.get("bucket_id")),
            "campaign_id": canonical_text(parameters.get("campaign_id")),
            "priority": priority,
            "scheduler_id": canonical_text(parameters.get("scheduler_id")),
            "scheduler_step": scheduler_step,
            "contact": contact.model_dump(),
        }

    @staticmethod
    def _change_priority(parameters: Mapping, event: InputEvent) -> Dict[str, Any]:
        return {"priority": as_int(parameters.get("priority")) or 0}

    @staticmethod
    def _change_scheduler_step(parameters: Mapping, event: InputEvent) -> Dict[str, Any]:
        return {"scheduler_step": as_int(parameters.get("scheduler_step")) or 0}

    @staticmethod
    def _remove_from_dialer(parameters: Mapping, event: InputEvent) -> Dict[str, Any]:
        return {}

    @staticmethod
    def _add_note(parameters: Mapping, event: InputEvent) -> Dict[str, Any]:
        text = parameters.get("text") or parameters.get("note") or ""
        return {"entity_type": "leads", "note_type": "common", "text": str(text)}
