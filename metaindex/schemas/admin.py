from pydantic import BaseModel, ConfigDict, Field

from metaindex.domain.models import EntryPermit


class AdminTriggerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_url: str | None = Field(default=None, alias="clientUrl")


class PermitPatchRequest(BaseModel):
    permit: EntryPermit


class RecoverySummaryOut(BaseModel):
    processed: int
    failed: int
    unsupported: int
    skipped: int
