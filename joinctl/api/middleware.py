from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from joinctl.config import Config

OPEN_PATHS = ("/docs", "/openapi.json", "/healthz")


class AuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, api_key: Optional[str] = None):
        super().__init__(app)
        self.token = api_key or Config.API_KEY

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(OPEN_PATHS):
            return await call_next(request)

        auth_header = request.headers.get("X-API-Key")
        if auth_header != self.token:
            return JSONResponse(status_code=403, content={"detail": "Unauthorized"})
        return await call_next(request)
