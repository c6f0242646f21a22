# models/release.py
import json
import logging
from typing import Literal, Optional

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ReleaseAction = Literal["insert", "update", "delete", "nuke", "unnuke", "modnuke", "delpre", "undelpre"]


class Nuke(BaseModel):
    id: int
    typeId: Optional[int] = None
    type: str
    preId: Optional[int] = None
    reason: str
    net: str
    nukeAt: int


class Release(BaseModel):
    """Immutable upstream release record. preAt is epoch seconds, size is bytes."""

    model_config = {"frozen": True}

    id: int
    name: str
    team: str = ""
    cat: str = ""
    genre: str = ""
    url: str = ""
    size: int = 0
    files: int = 0
    preAt: int
    nuke: Optional[Nuke] = None


class ReleaseEvent(BaseModel):
    action: ReleaseAction
    row: Release


class SearchData(BaseModel):
    rows: list[dict] = []


class SearchResponse(BaseModel):
    """Envelope returned by GET /?q=...&count=..."""
    data: SearchData


def parse_release_event(raw) -> Optional[ReleaseEvent]:
    """
    Parse one stream message into a ReleaseEvent.

    Returns None (and logs) for anything that is not valid JSON or does not
    match the expected shape; malformed payloads never reach the pipeline.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning("[stream] Dropping unparseable message: %s", e)
        return None
    try:
        return ReleaseEvent.model_validate(payload)
    except ValidationError as e:
        logger.warning("[stream] Dropping malformed event (%s error(s)): %s", e.error_count(), e.errors()[:3])
        return None
