from pydantic import BaseModel, Field
from typing import Generic, Optional, TypeVar, Dict, Any
from datetime import datetime, timezone

T = TypeVar('T')


class StandardResponse(BaseModel, Generic[T]):
    """Standard response format with consistent fields"""
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None
    error_code: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    meta: Optional[Dict[str, Any]] = None
