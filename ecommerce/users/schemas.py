import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RegisterRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=8, max_length=72)
    phone_number: str | None = Field(None, max_length=50)
    address: str | None = Field(None, max_length=500)


class LoginRequest(BaseModel):
    email: str
    password: str


class LoginResponse(BaseModel):
    user_id: uuid.UUID
    email: str
    full_name: str
    token: str


class UserResponse(BaseModel):
    id: uuid.UUID
    full_name: str
    email: str
    phone_number: str | None
    address: str | None
    created_at: datetime | None
    model_config = ConfigDict(from_attributes=True)


class UserUpdate(BaseModel):
    full_name: str | None = Field(None, min_length=1, max_length=200)
    phone_number: str | None = Field(None, max_length=50)
    address: str | None = Field(None, max_length=500)
