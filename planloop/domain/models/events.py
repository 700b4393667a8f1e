from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from planloop.domain.models.agent_state import ThreadStatus


class EventType(str, Enum):
    """Streamed event types"""
    START = "start"
    TOKEN = "token"
    END = "end"


class StreamEvent(BaseModel):
    """One event of an invocation's stream"""
    event: EventType
    node_role: Optional[str] = Field(None, description="Graph node that produced the event")
    thread_id: str
    checkpoint_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    final: bool = False
    error: bool = False
    aborted: bool = False
    status: Optional[ThreadStatus] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ResumeCommand(BaseModel):
    """Input that resumes a suspended thread"""
    thread_id: str
    checkpoint_id: str = Field(description="Latest checkpoint of the suspended thread")
    user_input: str


class Checkpoint(BaseModel):
    """Snapshot of a thread's orchestration state"""
    thread_id: str
    checkpoint_id: Optional[str] = None
    state: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    status: ThreadStatus = ThreadStatus.RUNNING
    pending_nodes: List[str] = Field(default_factory=list)
    interrupts: List[Any] = Field(default_factory=list)
