from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


class DataExportRequest(BaseModel):
    # db.data_export_requests
    user_id: str
    status: Literal["pending", "processing", "completed", "failed"] = "pending"
    token_hash: Optional[str] = None
    token_used: bool = False
    file_id: Optional[str] = None      # GridFS id
    error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
