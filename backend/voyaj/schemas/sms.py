from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class IncomingSMS(BaseModel):
    """Inbound webhook payload. Field names follow the provider's capitalised keys."""

    model_config = ConfigDict(populate_by_name=True)

    from_phone: str = Field(alias="From", min_length=1)
    body: str = Field(alias="Body", default="")
    group_id: Optional[str] = Field(alias="GroupId", default=None)


class IncomingSMSResponse(BaseModel):
    status: str = "queued"
    trip_id: int
    queue_length: int


class TestSMSRequest(BaseModel):
    from_phone: str = Field(min_length=1)
    body: str
    group_id: Optional[str] = None
