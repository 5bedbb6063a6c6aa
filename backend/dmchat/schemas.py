from pydantic import BaseModel, Field, field_validator
from typing import List, Optional

from .config import MAX_MESSAGE_LENGTH
from .models import MessageType


class RegisterIn(BaseModel):
    username: str = Field(..., min_length=2, max_length=32)
    password: str = Field(..., min_length=8)
    avatar: Optional[str] = None

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("username must have at least 2 characters")
        return v


class LoginIn(BaseModel):
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        return v.strip()


class UserOut(BaseModel):
    id: str
    username: str
    avatar: str = ""
    isOnline: bool = False
    lastSeen: Optional[str] = None


class TokenOut(BaseModel):
    token: str
    user: UserOut


class SendMessageIn(BaseModel):
    receiverId: str
    content: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    messageType: MessageType = MessageType.TEXT


class ChatCreateIn(BaseModel):
    receiverId: str


class SweepReportOut(BaseModel):
    success: bool = True
    message: str
    orphanedChats: int
    mergedChats: int
    movedMessages: int
    totalCleaned: int


class FieldError(BaseModel):
    field: str
    message: str


class ErrorOut(BaseModel):
    success: bool = False
    message: str
    code: Optional[str] = None
    errors: List[FieldError] = []


ERROR_RESPONSES = {status: {"model": ErrorOut} for status in (400, 401, 403, 404)}
