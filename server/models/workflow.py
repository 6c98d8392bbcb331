"""Pydantic models for workflow DAG definitions."""

from enum import Enum
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeType(str, Enum):
    """Plugin kind of a workflow node."""
    TEXT_TRANSFORM = "TEXT_TRANSFORM"
    API_PROXY = "API_PROXY"
    DATA_AGGREGATOR = "DATA_AGGREGATOR"
    DELAY = "DELAY"
    IF = "IF"
    CUSTOM = "CUSTOM"


class ConditionType(str, Enum):
    IF = "IF"
    ELSE = "ELSE"
    ALWAYS = "ALWAYS"


class RetryConfig(BaseModel):
    """Per-node retry override."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    max_attempts: int = Field(alias="maxAttempts", ge=1, le=20)
    backoff_ms: int = Field(default=1000, alias="backoffMs", ge=0)
    backoff_multiplier: float = Field(default=2.0, alias="backoffMultiplier", ge=1.0)


class EdgeCondition(BaseModel):
    type: ConditionType
    expression: Optional[str] = None


class NodeConfig(BaseModel):
    """A single workflow node."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    type: NodeType
    config: Dict[str, Any] = Field(default_factory=dict)
    retry_config: Optional[RetryConfig] = Field(default=None, alias="retryConfig")
    plugin_version: Optional[str] = Field(default=None, alias="pluginVersion")


class Edge(BaseModel):
    """Directed dependency between two nodes, optionally labelled for IF branches."""
    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    condition: Optional[Union[str, EdgeCondition]] = None

    @field_validator("condition")
    @classmethod
    def validate_condition(cls, v):
        if isinstance(v, str) and v not in ("true", "false"):
            raise ValueError('string edge condition must be "true" or "false"')
        return v

    @property
    def label(self) -> Optional[str]:
        """Branch label: 'true', 'false', 'IF', 'ELSE', 'ALWAYS' or None."""
        if self.condition is None:
            return None
        if isinstance(self.condition, str):
            return self.condition
        return self.condition.type.value


class DAGSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_concurrency: Optional[int] = Field(default=None, alias="maxConcurrency", ge=1)
    default_max_attempts: Optional[int] = Field(default=None, alias="defaultMaxAttempts", ge=1, le=20)


class DAGDefinition(BaseModel):
    """Immutable, versioned workflow definition."""
    model_config = ConfigDict(populate_by_name=True)

    nodes: List[NodeConfig] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    settings: Optional[DAGSettings] = None

    def to_storage(self) -> Dict[str, Any]:
        """Serialize with the external camelCase field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
