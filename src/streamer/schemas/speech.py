"""Pydantic models for the speech HTTP adapter."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SpeechRequestPayload(BaseModel):
    """Incoming request to speak or to generate speech."""

    text: str = Field(min_length=1)
    image_url: Optional[str] = Field(default=None, alias="imageURL")
    interrupt: bool = False
    direct: bool = False
    wait: bool = False

    model_config = ConfigDict(populate_by_name=True)


class SpeechAccepted(BaseModel):
    accepted: bool = True
    job_id: int
    text: str
    segments: Optional[List[str]] = None


class AvatarList(BaseModel):
    avatars: List[str]
