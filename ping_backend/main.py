from fastapi import APIRouter, FastAPI, Request
from pydantic import BaseModel

PING_NOTE = "ping from Facelex backend"

router = APIRouter()


class PingResponse(BaseModel):
    ok: bool = True
    note: str = PING_NOTE
    method: str


@router.api_route(
    "/api/ping",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    response_model=PingResponse,
)
def ping(request: Request):
    return PingResponse(method=request.method)


# 單獨部署時也能直接跑
app = FastAPI()
app.include_router(router)
