# /crm_dialer/workflows/definitions.py

"""
Static vocabularies shared by the flow graph model, the condition evaluator
and the action dispatcher.
"""

NODE_TYPES = ("start", "condition", "action", "end")

TRUE_BRANCH = "true"
FALSE_BRANCH = "false"
DEFAULT_BRANCH = "default"

# Logical field categories used by condition nodes, mapped to the flat key
# of the inbound event. Categories not listed here use the node's own `field`.
FIELD_TYPE_KEYS = {
    "pipeline": "pipeline_id",
    "status": "status_id",
    "bucket": "bucket_id",
    "scheduler": "scheduler_id",
    "scheduler_step": "scheduler_step",
    "dial_attempts": "dial_attempts",
}

OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains")

# Outbound topic per action type. `update_lead` is absent on purpose: it is
# merged into the lead batch processor instead of being published.
ACTION_TOPICS = {
    "send_to_dialer": "dialer.send_to_dialer",
    "add_to_bucket": "dialer.add_to_bucket",
    "change_priority": "dialer.change_priority",
    "change_scheduler_step": "dialer.change_scheduler_step",
    "remove_from_dialer": "dialer.remove_from_dialer",
    "add_note": "crm.add_note",
}

UPDATE_LEAD_ACTION = "update_lead"

SUPPORTED_ACTIONS = tuple(ACTION_TOPICS) + (UPDATE_LEAD_ACTION,)

# Actions that target an existing CRM lead and therefore need `lead_id`.
LEAD_TARGETED_ACTIONS = frozenset({
    "update_lead",
    "add_note",
    "change_priority",
    "change_scheduler_step",
    "remove_from_dialer",
})

# Request types understood by the rate-controlled dispatch queue.
REQUEST_UPDATE_LEADS = "update_leads"
REQUEST_ADD_NOTES = "add_notes"
REQUEST_PUSH_CONTACTS = "push_contacts"
