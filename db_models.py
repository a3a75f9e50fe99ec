from datetime import datetime
from enum import Enum
from pydantic import BaseModel, field_validator, model_validator
from typing import Optional, List


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    """One row of the Contact table."""

    id: int
    phoneNumber: Optional[str] = None
    email: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence
    createdAt: datetime
    updatedAt: Optional[datetime] = None
    deletedAt: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.linkPrecedence == LinkPrecedence.PRIMARY

    @property
    def age_key(self):
        # createdAt first, id breaks ties
        return (self.createdAt, self.id)


def linkage_problem(precedence, linked_id):
    """Why a (precedence, linkedId) pair cannot be stored, or None."""
    if LinkPrecedence(precedence) == LinkPrecedence.PRIMARY and linked_id is not None:
        return "a primary contact cannot have a linkedId"
    if LinkPrecedence(precedence) == LinkPrecedence.SECONDARY and linked_id is None:
        return "a secondary contact needs a linkedId"
    return None


def _phone_to_str(value):
    if isinstance(value, bool):
        raise ValueError("phoneNumber must be a string or a number")
    if isinstance(value, int):
        return str(value)
    return value


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def coerce_phone(cls, value):
        return _phone_to_str(value)


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ContactResponse


class AddContactRequest(BaseModel):
    id: Optional[int] = None
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence = LinkPrecedence.PRIMARY

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def coerce_phone(cls, value):
        return _phone_to_str(value)

    @model_validator(mode="after")
    def check_linkage(self):
        problem = linkage_problem(self.linkPrecedence, self.linkedId)
        if problem:
            raise ValueError(problem)
        return self
