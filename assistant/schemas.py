"""Pydantic request/response schemas for the assistant API."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# ---- Chat ----

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=5000)
    conversation_id: Optional[str] = Field(default=None, max_length=36)
    params: Dict[str, Union[str, int, float, bool, None]] = Field(default_factory=dict)
    timeout_s: Optional[float] = Field(default=None, gt=0, le=300)


class UsageInfo(BaseModel):
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    latency_ms: float = 0.0


class ChatResponse(BaseModel):
    response: str
    conversation_id: str
    trace_id: str
    model: str
    cached: bool
    shared: bool
    persisted: bool
    warning: Optional[str] = None
    duration_ms: float
    usage: UsageInfo
    route: str = "local"
    anonymized_entities: Dict[str, int] = Field(default_factory=dict)


# ---- Conversations ----

class ConversationCreateResponse(BaseModel):
    conversation_id: str


class TurnSchema(BaseModel):
    prompt: str
    completion: str
    timestamp: datetime
    trace_id: Optional[str] = None


class ConversationResponse(BaseModel):
    conversation_id: str
    turns: List[TurnSchema]


# ---- Errors ----

class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None
