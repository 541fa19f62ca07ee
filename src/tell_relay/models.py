# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models and value objects shared across the relay.

Models:
    - AttachmentRef: Attachment descriptor carried by a broker message
    - Message: Inbound message as returned by the broker
    - RouteEntry: Routing target for a recipient identity
    - QueuedMessage: Message waiting in the local retry queue
    - QueueFile: On-disk layout of the retry queue
    - InboundContext: Normalized context handed to a consumer
    - ReplyPayload / DispatchResponse: Consumer output

Dataclasses:
    - ResolvedAttachment: Attachment staged on local disk
    - DeliveryContext: Human channel a forward is sent to
    - AccountStatus: Runtime snapshot of one account loop
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
)

from .logger import get_logger

logger = get_logger(__name__)

IDENTITY_PREFIX = "tell/"
DEFAULT_ROUTE_KEY = "_default"


def strip_identity_prefix(value: str | None) -> str:
    """Return ``value`` without the ``tell/`` namespace prefix."""
    value = (value or "").strip()
    if value.lower().startswith(IDENTITY_PREFIX):
        return value[len(IDENTITY_PREFIX):]
    return value


def normalize_target(value: str | None) -> str:
    """Broker recipient name for a user supplied target (``tell/Bob`` -> ``bob``).

    Raises:
        ValueError: If no name is left once the prefix is removed.
    """
    name = strip_identity_prefix((value or "").lower()).strip()
    if not name:
        raise ValueError("a target is required: tell/<name> or <name>")
    return name


def utc_now_iso() -> str:
    """Return the current UTC timestamp as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class TransportMode(str, Enum):
    """How an account acquires new messages from the broker.

    Attributes:
        STREAM: Server-push event stream with polling fallback.
        POLL: Account-level long polling.
        LEGACY: Single-identity inbox polling with per-message read marks.
    """

    STREAM = "stream"
    POLL = "poll"
    LEGACY = "legacy"


class AttachmentRef(BaseModel):
    """Attachment descriptor as listed on a broker message."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    file_id: Annotated[str, Field(alias="fileId", min_length=1, description="Broker file identifier")]
    filename: Annotated[str, Field(default="file.bin", description="Original filename")]
    mime_type: Annotated[
        str,
        Field(default="application/octet-stream", alias="mimeType", description="Declared MIME type"),
    ]


class Message(BaseModel):
    """A unit of inter-identity communication fetched from the broker.

    Attributes:
        id: Broker-assigned identifier, stable across delivery attempts.
        sender: Sender identity without the ``tell/`` prefix.
        to_name: Recipient identity the message was addressed to.
        subject: Optional subject line.
        body: Text payload.
        created_at: Broker creation timestamp.
        reply_to_message_id: Parent message when this is a reply.
        thread_id: Thread identifier, when the broker provides one.
        attachments: Ordered attachment descriptors.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Annotated[str, Field(min_length=1)]
    sender: Annotated[str, Field(default="", alias="from")]
    to_name: Annotated[
        str | None,
        Field(default=None, validation_alias=AliasChoices("to_name", "toName"), serialization_alias="to_name"),
    ]
    subject: str | None = None
    body: str = ""
    created_at: Annotated[
        datetime | None,
        Field(default=None, validation_alias=AliasChoices("createdAt", "created_at"), serialization_alias="createdAt"),
    ]
    reply_to_message_id: Annotated[
        str | None,
        Field(
            default=None,
            validation_alias=AliasChoices("replyToMessageId", "reply_to_message_id"),
            serialization_alias="replyToMessageId",
        ),
    ]
    thread_id: Annotated[
        str | None,
        Field(default=None, validation_alias=AliasChoices("threadId", "thread_id"), serialization_alias="threadId"),
    ]
    attachments: list[AttachmentRef] = Field(default_factory=list)

    @field_validator("sender", "to_name", mode="before")
    @classmethod
    def _strip_prefix(cls, value: Any) -> Any:
        if value is None:
            return value
        return strip_identity_prefix(str(value))

    @field_validator("id", "reply_to_message_id", "thread_id", mode="before")
    @classmethod
    def _numeric_ids_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("body", "subject", mode="before")
    @classmethod
    def _text_or_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return "" if info.field_name == "body" else None
        if isinstance(value, (int, float, bool)):
            return str(value)
        return value

    @field_validator("created_at", mode="wrap")
    @classmethod
    def _lenient_timestamp(cls, value: Any, handler: ValidatorFunctionWrapHandler) -> datetime | None:
        # An unreadable timestamp must not make the whole message undeliverable.
        try:
            return handler(value)
        except ValidationError:
            return None

    @field_validator("attachments", mode="before")
    @classmethod
    def _drop_malformed_attachments(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        refs: list[AttachmentRef] = []
        for item in value:
            if isinstance(item, AttachmentRef):
                refs.append(item)
                continue
            try:
                refs.append(AttachmentRef.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed attachment descriptor: %r", item)
        return refs


class RouteEntry(BaseModel):
    """Where messages addressed to one identity are delivered.

    Attributes:
        consumer: Local consumer (agent) that processes the message.
        forward: Whether a rendering is also forwarded to the human channel.
        api_key: Credential used for replies sent as this identity.
        forward_channel: Explicit human channel for forwards of this route.
        forward_to: Address on ``forward_channel``.
        forward_account: Provider account used on ``forward_channel``.
    """

    model_config = ConfigDict(extra="forbid")

    consumer: Annotated[str, Field(min_length=1, description="Target consumer name")]
    forward: Annotated[bool, Field(default=True, description="Forward to the human channel")]
    api_key: Annotated[str | None, Field(default=None, description="Per-route reply credential")]
    forward_channel: str | None = None
    forward_to: str | None = None
    forward_account: str | None = None


class QueuedMessage(BaseModel):
    """A message whose dispatch failed, waiting in the local retry queue."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    sender: Annotated[str, Field(alias="from")]
    to_name: Annotated[str, Field(alias="toName")]
    consumer: str
    forward: bool = True
    content: str = ""
    raw_body: Annotated[str, Field(default="", alias="rawBody")]
    subject: str | None = None
    created_at: Annotated[str | None, Field(default=None, alias="createdAt")]
    queued_at: Annotated[str, Field(default_factory=utc_now_iso, alias="queuedAt")]
    attempts: Annotated[int, Field(default=1, ge=1)]
    last_error: Annotated[str, Field(default="", alias="lastError")]
    account_id: Annotated[str, Field(alias="accountId")]
    api_key: Annotated[str, Field(alias="apiKey", description="Account credential used to acknowledge")]
    reply_api_key: Annotated[str, Field(alias="replyApiKey", description="Credential used for replies")]
    reply_to_message_id: Annotated[str | None, Field(default=None, alias="replyToMessageId")]
    thread_id: Annotated[str | None, Field(default=None, alias="threadId")]
    attachments: list[AttachmentRef] = Field(default_factory=list)

    def to_message(self) -> Message:
        """Rebuild the broker message this entry was queued from."""
        return Message(
            id=self.id,
            sender=self.sender,
            to_name=self.to_name,
            subject=self.subject,
            body=self.raw_body,
            created_at=self.created_at,
            reply_to_message_id=self.reply_to_message_id,
            thread_id=self.thread_id,
            attachments=self.attachments,
        )


class QueueFile(BaseModel):
    """On-disk layout of one account's retry queue."""

    model_config = ConfigDict(populate_by_name=True)

    pending: list[QueuedMessage] = Field(default_factory=list)
    dead_letter: Annotated[list[QueuedMessage], Field(default_factory=list, alias="deadLetter")]


class MediaItem(BaseModel):
    """A staged attachment as exposed to consumers."""

    path: str
    filename: str
    mime_type: str


class InboundContext(BaseModel):
    """Normalized context handed to a consumer for one inbound message."""

    body: str
    raw_body: str
    sender: str
    recipient: str
    session_key: str
    account_id: str
    chat_type: str = "direct"
    sender_name: str
    provider: str = "tell"
    message_id: str
    timestamp: datetime | None = None
    reply_to_id: str | None = None
    thread_id: str | None = None
    subject: str | None = None
    media: list[MediaItem] = Field(default_factory=list)
    auto_reply_allowed: bool = False


class ReplyPayload(BaseModel):
    """Output produced by a consumer, sent back to the original sender."""

    model_config = ConfigDict(extra="ignore")

    text: Annotated[str, Field(validation_alias=AliasChoices("text", "content"))]
    subject: str | None = None


class DispatchResponse(BaseModel):
    """Answer to a dispatch request: the consumer's replies or an error."""

    replies: list[ReplyPayload] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ResolvedAttachment:
    """An attachment downloaded and staged for one dispatch."""

    file_id: str
    filename: str
    mime_type: str
    local_path: str

    def as_media(self) -> MediaItem:
        return MediaItem(path=self.local_path, filename=self.filename, mime_type=self.mime_type)


@dataclass(frozen=True)
class DeliveryContext:
    """Human-facing channel a forwarded rendering is delivered to."""

    channel: str
    to: str
    account_id: str = "default"


@dataclass
class AccountStatus:
    """Runtime snapshot of one account's delivery loop."""

    account_id: str
    mode: str
    running: bool = False
    last_start_at: str | None = None
    last_stop_at: str | None = None
    last_error: str | None = None
    last_inbound_at: str | None = None
    last_outbound_at: str | None = None
    pending: int = 0
    dead_letter: int = 0
    name: str | None = None
    enabled: bool = True
    configured: bool = False
    connected: bool = False
    issues: list[str] = field(default_factory=list)
    connectivity: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
