"""Webhook envelopes for Telegram and WhatsApp plus contact linking."""
from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Channel(str, Enum):
    WEB = "web"
    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"


class TelegramChat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int


class TelegramUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    first_name: Optional[str] = None
    username: Optional[str] = None


class TelegramPhotoSize(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_id: str


class TelegramMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_id: int
    chat: TelegramChat
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    text: Optional[str] = None
    photo: List[TelegramPhotoSize] = Field(default_factory=list)


class TelegramUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    update_id: int
    message: Optional[TelegramMessage] = None


class WhatsAppText(BaseModel):
    model_config = ConfigDict(extra="ignore")

    body: str


class WhatsAppMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    from_number: str = Field(alias="from")
    id: str
    type: str = "text"
    text: Optional[WhatsAppText] = None


class WhatsAppContactProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None


class WhatsAppContact(BaseModel):
    model_config = ConfigDict(extra="ignore")

    wa_id: str
    profile: Optional[WhatsAppContactProfile] = None


class WhatsAppValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: List[WhatsAppMessage] = Field(default_factory=list)
    contacts: List[WhatsAppContact] = Field(default_factory=list)


class WhatsAppChange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field: str = "messages"
    value: WhatsAppValue


class WhatsAppEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    changes: List[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: str
    entry: List[WhatsAppEntry] = Field(default_factory=list)


class ContactLinkRequest(BaseModel):
    """Register a messaging identity against the caller's tenant."""

    channel: Channel
    external_id: str = Field(min_length=1, max_length=64)
    display_name: Optional[str] = Field(default=None, max_length=120)
    driver_id: Optional[str] = None

    @field_validator("channel")
    @classmethod
    def _messaging_channel_only(cls, value: Channel) -> Channel:
        if value == Channel.WEB:
            raise ValueError("web sessions are not linked as contacts")
        return value

    @field_validator("external_id")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip().lstrip("+")
