"""
Shared data models for adapters.
"""

from typing import Optional

from pydantic import BaseModel, Field


class EventRow(BaseModel):
    """
    A single cast pulled from the warehouse events query.

    Attributes:
        text: Full cast text
        author_id: FID of the caster
        parent_author_id: FID of the cast being replied to (None for top-level casts)
        timestamp: Raw timestamp string as returned by the warehouse
    """
    text: str = Field(default="", description="Full cast text")
    author_id: str = Field(description="FID of the caster")
    parent_author_id: Optional[str] = Field(default=None, description="FID of the parent cast author")
    timestamp: Optional[str] = Field(default=None, description="Cast timestamp")


class LeaderboardRow(BaseModel):
    """A (fid, peanut_count) pair from the warehouse leaderboard query."""
    user_id: str = Field(description="FID of the user")
    score: int = Field(default=0, ge=0, description="All-time peanut count")


class IdentityRecord(BaseModel):
    """Profile metadata resolved from the identity directory."""
    user_id: str = Field(description="FID of the user")
    display_name: str = Field(description="Profile name")
    avatar_url: Optional[str] = Field(default=None, description="Profile image URL")


__all__ = ["EventRow", "LeaderboardRow", "IdentityRecord"]
