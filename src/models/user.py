"""Caller identity resolved from a bearer token."""

from uuid import UUID

from pydantic import BaseModel


class User(BaseModel):
    """The authenticated caller. Accounts live in the identity service."""

    id: UUID
    is_admin: bool = False
