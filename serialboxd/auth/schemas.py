from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_ApiModel):
    name: str = Field(alias="nome", min_length=1)
    # stored exactly as typed; login and reset look it up the same way
    email: str = Field(min_length=1)
    password: str = Field(alias="senha", min_length=1)

class RegisterResponse(_ApiModel):
    name: str = Field(alias="nome")
    user_id: int = Field(alias="userId")

class LoginRequest(_ApiModel):
    email: str = Field(min_length=1)
    password: str = Field(alias="senha", min_length=1)

class LoginResponse(_ApiModel):
    name: str = Field(alias="nome")
    email: str
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl")
    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")

class RefreshRequest(_ApiModel):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")

class TokenPairResponse(_ApiModel):
    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")

class PasswordChange(_ApiModel):
    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword", min_length=1)

class ForgotPasswordRequest(_ApiModel):
    email: str = Field(min_length=1)

class ResetPasswordRequest(_ApiModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=1)

class AvatarResponse(_ApiModel):
    message: str
    avatar_url: str = Field(alias="avatarUrl")

class MessageResponse(BaseModel):
    message: str

class AccessClaims(BaseModel):
    user_id: int
    username: Optional[str] = None
    exp: int
