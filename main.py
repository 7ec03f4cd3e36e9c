import os
import json
import math
import logging
from functools import lru_cache
from typing import List, Optional, Literal, Any
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ping_backend.main import router as ping_router

# --------- Logging ----------
logger = logging.getLogger("facelex_backend")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

# --------- FastAPI ----------
app = FastAPI(title="Facelex Backend", version="1.0.0")

# 允許跨網域（給 iOS / web 打）
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ping_router)


# --------- Settings ----------
class Settings(BaseSettings):
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.4
    openai_timeout: float = 30.0

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# --------- Models (Request) ----------
class AnalyzeFaceRequest(BaseModel):
    front_image: str

    @field_validator("front_image")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("front_image is empty")
        return v


# --------- Models (Response) ----------
Level = Literal["SLIGHT", "MILD", "HIGH RISK"]

TITLE_MAX = 80
SUBTITLE_MAX = 160
ACTION_MAX = 160

DEFAULT_TITLE = "Insight"
DEFAULT_SUBTITLE = ""
DEFAULT_ACTION = "No specific action."


class Insight(BaseModel):
    level: Level = "SLIGHT"
    title: str = DEFAULT_TITLE
    subtitle: str = DEFAULT_SUBTITLE
    action: str = DEFAULT_ACTION


class AnalyzeFaceResponse(BaseModel):
    insights: List[Insight]


class ErrorResponse(BaseModel):
    error: str


# --------- Prompt ----------
SYSTEM_PROMPT = (
    "You are Facelex, a friendly wellness assistant that looks at face photos "
    "and points out visible lifestyle and skin-care signals. "
    "You are not a doctor: never diagnose diseases or name medical conditions."
)

USER_PROMPT = """
You will receive a face photo and must return a JSON array of insights.

Strictly respond ONLY with a JSON array, no extra text.
Each item must have exactly these fields:
[
  {
    "level": "SLIGHT" | "MILD" | "HIGH RISK",
    "title": string,
    "subtitle": string,
    "action": string
  }
]

Use:
- "HIGH RISK" only for things that are urgent / clearly problematic.
- "MILD" for moderate but noticeable issues.
- "SLIGHT" for mild suggestions / optimization.

Rules:
- Return at most 5 items.
- Use non-diagnostic wellness language (sleep, hydration, sun care, stress).
- Keep title under 80 characters, subtitle and action under 160 characters.
- If the face looks generally healthy and nothing important is wrong, return an empty array: []
""".strip()


# --------- Helpers ----------
def parse_body(raw: bytes) -> dict:
    # body 有時是 JSON 物件，有時是被再包一層的 JSON 字串
    try:
        body: Any = json.loads(raw or b"{}")
        if isinstance(body, str):
            body = json.loads(body)
    except (ValueError, RecursionError):
        return {}
    return body if isinstance(body, dict) else {}


def is_truthy(value: Any) -> bool:
    # 跟 JS 一樣：空陣列、空物件算 true，NaN 算 false
    if isinstance(value, (list, dict)):
        return True
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def to_text(value: Any) -> str:
    """Stringify a decoded JSON value the way the iOS client's JS backend did."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, list):
        return ",".join("" if v is None else to_text(v) for v in value)
    if isinstance(value, dict):
        return "[object Object]"
    return str(value)


def normalize_level(value: Any) -> str:
    level = to_text(value).upper().strip() if is_truthy(value) else ""
    if level in ("HIGH", "HIGH_RISK"):
        level = "HIGH RISK"
    if level not in ("SLIGHT", "MILD", "HIGH RISK"):
        level = "SLIGHT"
    return level


def clamp_text(value: Any, default: str, limit: int) -> str:
    return (to_text(value) if is_truthy(value) else default)[:limit]


def normalize_insights(raw: Any) -> List[Insight]:
    if not isinstance(raw, list):
        return []

    insights = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        insights.append(
            Insight(
                level=normalize_level(item.get("level")),
                title=clamp_text(item.get("title"), DEFAULT_TITLE, TITLE_MAX),
                subtitle=clamp_text(item.get("subtitle"), DEFAULT_SUBTITLE, SUBTITLE_MAX),
                action=clamp_text(item.get("action"), DEFAULT_ACTION, ACTION_MAX),
            )
        )

    dropped = len(raw) - len(insights)
    if dropped:
        logger.debug(f"Dropped {dropped} malformed insight entries")
    return insights


def strip_code_fence(content: str) -> str:
    trimmed = content.strip()
    if trimmed.startswith("```"):
        start = trimmed.find("[")
        end = trimmed.rfind("]")
        if start >= 0 and end > start:
            return trimmed[start : end + 1]
    return trimmed


def parse_insights(content: str) -> List[Insight]:
    """Decode model text into insights; undecodable text gives an empty list."""
    try:
        raw = json.loads(strip_code_fence(content))
    except (ValueError, RecursionError):
        logger.error(f"JSON parse failed, content: {content[:500]!r}")
        return []
    return normalize_insights(raw)


def _part_field(part: Any, name: str) -> Any:
    if isinstance(part, dict):
        return part.get(name)
    return getattr(part, name, None)


def extract_text(content: Any) -> str:
    """
    Pull the reply text out of a chat message content.

    Content is either a plain string or a list of typed parts such as
    ``{"type": "text", "text": "..."}``; the first text part wins.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for part in content:
            if _part_field(part, "type") == "text":
                text = _part_field(part, "text")
                return text if isinstance(text, str) else ""
    return ""


def build_messages(front_image: str) -> list:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": USER_PROMPT},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:image/jpeg;base64,{front_image}"},
                },
            ],
        },
    ]


async def call_openai(front_image: str) -> str:
    # 關鍵：不要在 import 時就初始化 OpenAI，避免沒 key 就整個炸
    from openai import AsyncOpenAI

    settings = get_settings()
    if not settings.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY not set")

    async with AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.openai_timeout) as client:
        resp = await client.chat.completions.create(
            model=settings.openai_model,
            messages=build_messages(front_image),
            temperature=settings.openai_temperature,
        )
    if not resp.choices:
        return ""
    return extract_text(resp.choices[0].message.content)


# --------- Routes ----------
@app.get("/health")
def health():
    return {"ok": True}


ANY_METHOD = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


# 跟原本一樣不限 method，沒 body 就走 400
@app.api_route(
    "/api/analyze_face",
    methods=ANY_METHOD,
    response_model=AnalyzeFaceResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": AnalyzeFaceResponse}},
)
@app.api_route(
    "/analyze-face", methods=ANY_METHOD, response_model=AnalyzeFaceResponse, include_in_schema=False
)
async def analyze_face(request: Request):
    try:
        body = parse_body(await request.body())

        try:
            payload = AnalyzeFaceRequest.model_validate(body)
        except ValidationError:
            logger.warning("Rejected analyze_face request without front_image")
            return JSONResponse(
                status_code=400,
                content=ErrorResponse(error="Missing front_image (base64).").model_dump(),
            )

        content = await call_openai(payload.front_image)

        # JSON 壞掉就回空陣列 → iOS 會顯示 'You are good!'
        insights = parse_insights(content)
        return AnalyzeFaceResponse(insights=insights)

    except Exception:
        logger.exception("Facelex API error")
        # 出錯也回空 insights，App 不會當掉
        return JSONResponse(status_code=500, content={"insights": []})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
