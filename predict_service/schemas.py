import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

CANCER = "Cancer"
NON_CANCER = "Non-cancer"


def new_prediction_id() -> str:
    return str(uuid.uuid4())


def utc_timestamp() -> str:
    # 2024-05-01T12:00:00.000Z
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PredictionRecord(BaseModel):
    """Predictions collection schema
    Collection name: "predictions"
    """
    id: str = Field(..., description="Random uuid4 identifier, also the document id")
    result: Literal["Cancer", "Non-cancer"] = Field(..., description="Predicted class label")
    suggestion: str = Field(..., min_length=1, description="Advice shown to the user")
    createdAt: str = Field(..., description="ISO timestamp when prediction was made")


class HistoryItem(BaseModel):
    id: str
    history: dict


class PredictResponse(BaseModel):
    status: str = "success"
    message: str
    data: PredictionRecord


class HistoriesResponse(BaseModel):
    status: str = "success"
    data: List[HistoryItem]


class FailResponse(BaseModel):
    status: str = "fail"
    message: Optional[str] = None
