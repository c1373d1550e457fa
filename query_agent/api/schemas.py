from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Dict, List, Any, Literal

from query_agent.core.guardrails import Guardrails, MAX_MESSAGE_LENGTH

TableName = Literal["projects", "companies", "addresses"]
ModelTier = Literal["auto", "fast", "thinking", "pro"]

HISTORY_WINDOW = 10


class HistoryItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    content: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    preferred_table: Optional[TableName] = Field(None, alias="preferredTable")
    history: Optional[List[HistoryItem]] = None
    model_tier: ModelTier = Field("auto", alias="modelTier")
    deep_research: bool = Field(False, alias="deepResearch")

    @field_validator("content")
    @classmethod
    def reject_impersonation(cls, value: str) -> str:
        if Guardrails.is_impersonation(value):
            raise ValueError("Invalid input format")
        return value

    def recent_history(self) -> List[HistoryItem]:
        return (self.history or [])[-HISTORY_WINDOW:]


class TableColumn(BaseModel):
    name: str
    type: str


class AssistantMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str
    type: Literal["assistant"] = "assistant"
    visualization_type: Optional[Literal["table"]] = Field(None, alias="visualizationType")
    table_columns: Optional[List[TableColumn]] = Field(None, alias="tableColumns")
    table_data: Optional[List[Dict[str, Any]]] = Field(None, alias="tableData")
    follow_ups: Optional[List[str]] = Field(None, alias="followUps")


class DetectedTableIntent(BaseModel):
    table: str
    confidence: float


class AIChunk(BaseModel):
    """One NDJSON line of the chat stream."""

    model_config = ConfigDict(populate_by_name=True)

    assistant_message: Optional[AssistantMessage] = Field(None, alias="assistantMessage")
    detected_table_intent: Optional[DetectedTableIntent] = Field(None, alias="detectedTableIntent")
    error: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True)
        message = data.get("assistantMessage")
        if message is not None:
            # Visualization keys only travel when set
            for key in ("visualizationType", "tableColumns", "tableData", "followUps"):
                if message.get(key) is None:
                    message.pop(key, None)
        return data


class ErrorResponse(BaseModel):
    error: str
    code: str
    trace_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    store: str
    cache: bool
    providers: Dict[str, bool]
