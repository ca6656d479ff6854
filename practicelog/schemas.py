from pydantic import BaseModel
from typing import Optional


class ProgressCreated(BaseModel):
    success: bool = True
    id: int


class CompletionEventOut(BaseModel):
    id: int
    practice_id: str
    occurred_at: str


class UserOut(BaseModel):
    id: int
    provider: str
    email: Optional[str] = None
    created_at: str


class MeOut(BaseModel):
    user: UserOut
