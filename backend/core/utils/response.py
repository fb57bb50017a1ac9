"""
Response envelope shared by every endpoint: {success, data, message} plus
optional pagination and errors.
"""
from typing import Any, Optional, Dict, List
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi import status


class Response(JSONResponse):
    """JSONResponse carrying the standard envelope, returnable straight from a route"""

    def __init__(
        self,
        success: bool = True,
        data: Any = None,
        message: str = "Success",
        status_code: int = status.HTTP_200_OK,
        pagination: Optional[Dict[str, Any]] = None,
        errors: Optional[List[str]] = None,
        **kwargs
    ):
        body = {
            "success": success,
            # Pydantic models, UUIDs and datetimes become plain JSON values
            "data": jsonable_encoder(data),
            "message": message,
        }
        if pagination:
            body["pagination"] = pagination
        if errors:
            body["errors"] = errors

        super().__init__(content=body, status_code=status_code, **kwargs)
