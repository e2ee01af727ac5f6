from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


class ExportRequest(BaseModel):
    password: str = Field(min_length=1)


class ImportRequest(BaseModel):
    # wrapped payload as an object or as the JSON text read from the QR code
    wrapped: Union[Dict[str, Any], str]
    password: str


class ConsentRequest(BaseModel):
    callback: str
    payload: Optional[str] = None


class VerifyRequest(BaseModel):
    jwt: str
    pubKey: str
    callback: Optional[str] = None
