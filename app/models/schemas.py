"""
Wire schemas for the code playground protocol and REST helpers.
"""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.sandbox.models import AttachedFile, ExecutionRequest, Session


class ClientMessage(BaseModel):
    """One inbound WebSocket frame."""

    event: str = Field(description="Event name")
    data: Any = Field(default=None, description="Event payload")


class ServerMessage(BaseModel):
    """One outbound WebSocket frame."""

    event: str
    data: Any = None


class InitSessionPayload(BaseModel):
    """Payload of ``init-session``."""

    model_config = ConfigDict(populate_by_name=True)

    language: str = Field(min_length=1, description="Language identifier, e.g. 'python'")
    image: str | None = Field(default=None, description="Runtime image; catalog default when omitted")


class AttachedFilePayload(BaseModel):
    """A client-side file, base64 encoded."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    content: str = Field(
        validation_alias=AliasChoices("content", "content_base64", "contentBase64"),
        description="Base64-encoded file contents",
    )


class RunCodePayload(BaseModel):
    """Payload of ``run-code``."""

    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(description="Source code to run")
    extension: str | None = Field(
        default=None,
        validation_alias=AliasChoices("extension", "file_extension", "fileExtension"),
    )
    entry_command: str | None = Field(
        default=None,
        validation_alias=AliasChoices("entry_command", "entryCommand"),
    )
    install_command: str | None = Field(
        default=None,
        validation_alias=AliasChoices("install_command", "installCommand"),
    )
    setup_code: str | None = Field(
        default=None,
        validation_alias=AliasChoices("setup_code", "setupCode"),
    )
    language: str | None = None
    files: list[AttachedFilePayload] = Field(default_factory=list)

    def to_request(self) -> ExecutionRequest:
        return ExecutionRequest(
            source_code=self.code,
            file_extension=(self.extension or "").lstrip("."),
            entry_command=self.entry_command or "",
            install_command=self.install_command,
            setup_code=self.setup_code,
            attached_files=[
                AttachedFile(name=f.name, content_base64=f.content) for f in self.files
            ],
            language=self.language,
        )


class SessionInfo(BaseModel):
    """Read-only view of a live session."""

    id: str
    created_at: datetime
    backend: str
    language: str | None = None
    image: str | None = None
    sandbox_id: str | None = None
    has_sandbox: bool = False

    @classmethod
    def from_session(cls, session: Session) -> "SessionInfo":
        return cls(
            id=session.id,
            created_at=session.created_at,
            backend=session.backend_kind.value,
            language=session.language,
            image=session.image,
            sandbox_id=session.sandbox.id if session.sandbox else None,
            has_sandbox=session.has_sandbox,
        )


class SessionListResponse(BaseModel):
    """List of live sessions."""

    sessions: list[SessionInfo]
    total: int


class RuntimeInfo(BaseModel):
    """One entry of the runtime catalog."""

    language: str
    name: str
    image: str
    extension: str
    entry_command: str
    install_command: str | None = None
    setup_code: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    environment: str
    mode: str | None = None
    sessions: int = 0


class ErrorResponse(BaseModel):
    """Error response."""

    error: str = Field(description="Error message")
    code: str = Field(description="Error code")
    details: str | None = Field(default=None, description="Error details")
