from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Author(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    name: str
    avatar: Optional[str] = None
    role: str = "User"


class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    text: str
    created_at: datetime = Field(alias="createdAt")
    user: Author
    sent: bool = True


class ConversationCreateIn(BaseModel):
    conversation_id: Optional[str] = None
    # plain ids or user objects carrying _id
    participants: list = []
    meta: dict = {}


class ConversationOut(BaseModel):
    id: str
    participants: List[str] = []
    meta: dict = {}
    updated_at: Optional[datetime] = None


class MessageSendIn(BaseModel):
    text: str


class SendResultOut(BaseModel):
    ok: bool
    id: Optional[str] = None
