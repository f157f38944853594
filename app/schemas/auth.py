from pydantic import BaseModel, EmailStr, Field


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterPatientRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    document_type: str = Field(..., min_length=2, max_length=5)
    identification: str = Field(..., min_length=3, max_length=50)
    phone: str | None = Field(None, max_length=50)
    full_name: str | None = Field(
        None,
        max_length=255,
        description="Used only when the identity registry cannot be reached",
    )
