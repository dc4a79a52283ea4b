"""
Credential events accepted by the session resolver.

A credential event is one of:
- SignIn: e-mail + secret
- SignUp: e-mail + secret + draft profile (optionally a new society name)
- ExternalSessionChange: fired by the auth backend's own refresh channel
"""

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, SecretStr, model_validator

from .domain import Role


class DraftProfile(BaseModel):
    """Profile fields supplied at registration."""

    name: str = ""
    phone: str = ""
    role: Role = Role.TENANT
    society_id: Optional[str] = None
    society_name: Optional[str] = Field(
        default=None,
        description="Only for role=admin: name of the society to create"
    )
    flat_memberships: List[str] = Field(default_factory=list)
    move_in_date: Optional[str] = None

    @model_validator(mode="after")
    def check_society(self) -> "DraftProfile":
        if self.society_name is not None and not self.society_name.strip():
            self.society_name = None
        if self.society_name and self.role != Role.ADMIN:
            raise ValueError("Only administrators can create a society")
        return self

    @property
    def creates_society(self) -> bool:
        return self.role == Role.ADMIN and bool(self.society_name)


class SignIn(BaseModel):
    kind: Literal["sign_in"] = "sign_in"
    email: EmailStr
    secret: SecretStr


class SignUp(BaseModel):
    kind: Literal["sign_up"] = "sign_up"
    email: EmailStr
    secret: SecretStr
    draft: DraftProfile = Field(default_factory=DraftProfile)
    establish_session: bool = Field(
        default=True,
        description="False when an administrator registers someone else"
    )


class ExternalSessionChange(BaseModel):
    kind: Literal["external_session_change"] = "external_session_change"
    subject_id: str
    force: bool = Field(
        default=False,
        description="Refetch even when the subject is already resolved"
    )


CredentialEvent = Union[SignIn, SignUp, ExternalSessionChange]
