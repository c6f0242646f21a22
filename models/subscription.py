# models/subscription.py
from typing import Optional

from pydantic import BaseModel, Field

QUERY_MIN_LENGTH = 4
QUERY_MAX_LENGTH = 50


class Subscription(BaseModel):
    """Persisted shape under user:<ownerId>. created is epoch milliseconds."""
    id: str
    query: str
    created: int


class Watermark(BaseModel):
    """Persisted shape under lastSeen:<key>: last delivered release for a query."""
    id: Optional[int] = None
    preAt: Optional[int] = None


class QueryMatch(BaseModel):
    """A registered query that matched a release, with its subscribed owners."""
    query: str
    owners: list[str] = Field(default_factory=list)
