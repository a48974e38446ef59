import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


Role = Literal["user", "model", "tool"]
FileStatus = Literal["uploaded", "invalid"]
FileKind = Literal["upload", "transformation"]
JobKind = Literal["analysis", "transformation"]
JobStatus = Literal["pending", "running", "completed", "failed"]
ContextSource = Literal["upload", "manual", "transformation"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class ToolCallRequest(BaseModel):
    id: str = Field(default_factory=new_call_id)
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolSuccess(BaseModel):
    status: Literal["success"] = "success"
    payload: Dict[str, Any] = Field(default_factory=dict)
    message: str = ""


class ToolFailure(BaseModel):
    status: Literal["failure"] = "failure"
    message: str


ToolOutcome = Annotated[Union[ToolSuccess, ToolFailure], Field(discriminator="status")]


class ToolCallResult(BaseModel):
    call_id: str
    name: str
    outcome: ToolOutcome

    @property
    def ok(self) -> bool:
        return self.outcome.status == "success"

    @classmethod
    def success(cls, request: ToolCallRequest, payload: Dict[str, Any], message: str = "") -> "ToolCallResult":
        return cls(call_id=request.id, name=request.name, outcome=ToolSuccess(payload=payload, message=message))

    @classmethod
    def failure(cls, request: ToolCallRequest, message: str) -> "ToolCallResult":
        return cls(call_id=request.id, name=request.name, outcome=ToolFailure(message=message))

    def to_model_payload(self) -> Dict[str, Any]:
        """Shape handed back to the model as the function response."""
        if isinstance(self.outcome, ToolSuccess):
            return {"success": True, "message": self.outcome.message, "data": self.outcome.payload}
        return {"error": True, "message": self.outcome.message}


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    call: ToolCallRequest


class ToolResultPart(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    result: ToolCallResult


Part = Annotated[Union[TextPart, ToolCallPart, ToolResultPart], Field(discriminator="type")]


class Message(BaseModel):
    role: Role
    parts: List[Part]
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", parts=[TextPart(text=text)])

    @classmethod
    def model_text(cls, text: str) -> "Message":
        return cls(role="model", parts=[TextPart(text=text)])

    @classmethod
    def model_call(cls, call: ToolCallRequest) -> "Message":
        return cls(role="model", parts=[ToolCallPart(call=call)])

    @classmethod
    def tool_result(cls, result: ToolCallResult) -> "Message":
        return cls(role="tool", parts=[ToolResultPart(result=result)])

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def kind(self) -> str:
        """Short label used when checking turn shape: user, model_text, model_call, tool."""
        if self.role == "model":
            if any(isinstance(part, ToolCallPart) for part in self.parts):
                return "model_call"
            return "model_text"
        return self.role


class FileRef(BaseModel):
    id: str
    original_name: str
    storage_path: str
    size_bytes: int
    uploaded_at: datetime
    status: FileStatus = "uploaded"
    kind: FileKind = "upload"
    validation_error: Optional[str] = None
    source_url: Optional[str] = None

    def public_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"storage_path"})
        data["fileId"] = self.id
        return data


class JobRef(BaseModel):
    id: str
    kind: JobKind
    status: JobStatus = "pending"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    source_url: Optional[str] = None
    output_file_id: Optional[str] = None
    detail: Optional[str] = None


class PricingContext(BaseModel):
    content: str
    file_name: str
    file_id: str
    source: ContextSource = "manual"
    set_at: datetime = Field(default_factory=utc_now)


class ValidationResult(BaseModel):
    is_valid: bool
    error: Optional[str] = None
    missing_field: Optional[str] = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ModelReply(BaseModel):
    text: str = ""
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)


class SetPricingContextRequest(BaseModel):
    fileId: str
