from pydantic import BaseModel
from typing import Any, Dict, Optional, Union

# Scalar header values are accepted and sent as their string form
HeaderValue = Union[str, int, float, bool]


class ProxyBodyRequest(BaseModel):
    """JSON body accepted by ``POST /proxy``."""

    url: Optional[str] = None
    method: str = "GET"
    headers: Dict[str, HeaderValue] = {}
    data: Any = None


class ContactRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    message: Optional[str] = None

    def is_complete(self) -> bool:
        return bool(self.name and self.email and self.message)
