from typing import List, Optional

from pydantic import BaseModel, Field


class User(BaseModel):
    username: str
    scopes: List[str] = []


class TokenData(BaseModel):
    username: Optional[str] = None
    scopes: List[str] = []


class ChunkHeaders(BaseModel):
    """Out-of-band description of a chunked upload, sent with every chunk."""

    file_name: str = Field(min_length=1)
    file_size: int = Field(ge=0)
    file_type: Optional[str] = None
    offset: Optional[int] = Field(default=None, ge=0)


class FileAttributes(BaseModel):
    id: str
    name: str
    filename: str
    size: int
    type: Optional[str] = None
    url: str


class UploadConfigResponse(BaseModel):
    maxChunkSize: int
    fieldName: str
    SecurityID: Optional[str] = None
