from pydantic import BaseModel, Field

from models.subscription import QUERY_MAX_LENGTH, QUERY_MIN_LENGTH


class SubscribeRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=QUERY_MIN_LENGTH, max_length=QUERY_MAX_LENGTH)
    # skip the similar-subscription confirmation step
    confirm: bool = False


class UnsubscribeRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)


class AlertsChannelRequest(BaseModel):
    channel_id: str = Field(..., min_length=1)


class SimulateReleaseRequest(BaseModel):
    name: str = Field(..., min_length=1)
