from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ErrorBody(BaseModel):
    error: str
    details: Optional[Union[str, List[str], Dict[str, Any]]] = None


class MessageResponse(BaseModel):
    message: str


class UserOut(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool = False


class SessionOut(BaseModel):
    id: str
    expires_at: datetime


class AuthResponse(BaseModel):
    message: str
    user: UserOut
    # None when the account still has to verify its email address
    session: Optional[SessionOut] = None


class ProfileResponse(BaseModel):
    message: str
    user: UserOut


class ImageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_url: str = Field(alias="imageUrl")
    prompt: str
    enhanced_prompt: str = Field(alias="enhancedPrompt")


class DatastoreProbe(BaseModel):
    chat_sessions_accessible: bool
    chat_messages_accessible: bool
    crud_operations: bool


class ConnectionTestResponse(BaseModel):
    message: str
    timestamp: datetime
    database: DatastoreProbe
    tables: Dict[str, str]


class ConnectivityResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_api_key: bool = Field(alias="hasApiKey")
    api_key_length: int = Field(alias="apiKeyLength")
    message: str
    environment: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
