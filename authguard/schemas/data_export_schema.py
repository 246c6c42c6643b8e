from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class DataExportResponse(BaseModel):
    id: str
    status: str
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class DataExportsListResponse(BaseModel):
    exports: List[DataExportResponse]
