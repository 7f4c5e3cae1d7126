"""Message envelope and payload models exchanged between contexts."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Sender(str, Enum):
    """Sender tag carried by every envelope.

    Values match the tags used by the browser extension scripts.
    """

    BROKER = "BACKGROUND"
    RELAY = "CONTENT"
    CLIENT = "CLIENT"


class MessageType(str, Enum):
    CHECK_PREVIEW = "CHECK_PREVIEW"
    SHOW_PREVIEW = "SHOW_PREVIEW"
    PROCESS_PREVIEW = "PROCESS_PREVIEW"
    MEDIA_ACCESS = "MEDIA_ACCESS"
    MEDIA_FAIL = "MEDIA_FAIL"
    RTC_SEND_OFFER = "RTC_SEND_OFFER"
    ICE_CANDIDATE_SEND = "ICE_CANDIDATE_SEND"
    RTC_DONE = "RTC_DONE"
    RTC_FAIL = "RTC_FAIL"


class Message(BaseModel):
    """Envelope for one bus send."""

    model_config = ConfigDict(frozen=True)

    sender: Sender
    type: MessageType
    content: Any = None


class DescriptionPayload(BaseModel):
    """SDP offer or answer, with the ICE restart flag set on restart offers."""

    model_config = ConfigDict(populate_by_name=True)

    sdp: str
    type: str
    ice_restart: bool = Field(default=False, alias="iceRestart")


class CandidatePayload(BaseModel):
    """ICE candidate as produced by the peer connection engine."""

    model_config = ConfigDict(extra="allow")

    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None

    @classmethod
    def parse_content(cls, content: Any) -> Optional[dict]:
        """Validate ICE_CANDIDATE_SEND content. None is the end-of-candidates marker."""
        if content is None:
            return None
        return cls.model_validate(content).model_dump()


class MediaAccessPayload(BaseModel):
    """Outcome reported by an escalation delegate."""

    status: str
    error: str = ""


class MediaFailPayload(BaseModel):
    status: str
    error: str = ""


class RtcFailPayload(BaseModel):
    error: str = ""


class PreviewStatus(BaseModel):
    """Reply to CHECK_PREVIEW."""

    status: bool = False
    stream: Optional[str] = None
