# /crm_dialer/models/flow.py

from typing import Optional, List, Dict, Any, Literal, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator

from crm_dialer.workflows.definitions import DEFAULT_BRANCH, FALSE_BRANCH, TRUE_BRANCH


class FlowNode(BaseModel):
    """
    A single node of a flow graph as saved by the flow builder UI.

    Condition nodes carry `{field, fieldType, operator, value}` (optionally nested
    under `conditionData`); action nodes carry `{actionType, actionData}`.
    UI-only keys such as `position` are ignored.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1, description="Node identifier, unique within a flow")
    type: Literal["start", "condition", "action", "end"] = Field(..., description="Node kind")
    data: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")

    @property
    def condition(self) -> Dict[str, Any]:
        nested = self.data.get("conditionData")
        return nested if isinstance(nested, dict) else self.data

    @property
    def action_type(self) -> Optional[str]:
        return self.data.get("actionType") or self.data.get("type")

    @property
    def action_parameters(self) -> Dict[str, Any]:
        nested = self.data.get("actionData")
        if isinstance(nested, dict):
            return nested
        return {k: v for k, v in self.data.items() if k not in ("actionType", "type", "label")}


class FlowEdge(BaseModel):
    """Directed edge; `branch` is only meaningful on edges leaving a condition node."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(default="", description="Edge identifier")
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    branch: str = Field(default=DEFAULT_BRANCH, description="true, false or default")

    @model_validator(mode="before")
    @classmethod
    def normalize_branch(cls, data: Any) -> Any:
        # Older flows store the branch as the edge `type` or the React Flow `sourceHandle`.
        # React Flow also names its bezier edge type "default", so a true/false on
        # any of these keys outranks it.
        if not isinstance(data, dict):
            return data
        data = dict(data)
        candidates = [
            data[key].lower() for key in ("branch", "type", "sourceHandle")
            if isinstance(data.get(key), str)
        ]
        data["branch"] = next(
            (c for c in candidates if c in (TRUE_BRANCH, FALSE_BRANCH)),
            DEFAULT_BRANCH,
        )
        if data.get("id") is None:
            data["id"] = ""
        return data


class FlowConfig(BaseModel):
    """The stored `{nodes, edges}` blob."""
    model_config = ConfigDict(extra="ignore")

    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)


class FlowDefinition(BaseModel):
    """A user-authored flow as persisted in the `integration_flows` collection."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="_id")
    name: str = Field(default="")
    is_active: bool = Field(default=False)
    flow_data: Union[str, bytes, Dict[str, Any], None] = Field(default=None, description="Opaque graph blob")

    @model_validator(mode="before")
    @classmethod
    def stringify_id(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            for key in ("_id", "id"):
                if key in data and data[key] is not None and not isinstance(data[key], str):
                    data[key] = str(data[key])
            if "_id" not in data and "id" in data:
                data["_id"] = data.pop("id")
        return data
