import base64
import binascii

from pydantic import BaseModel, Field, field_validator


class StartPayload(BaseModel):
    userId: str = Field(min_length=1)
    title: str | None = Field(default=None, min_length=1, max_length=255)


class ChunkPayload(BaseModel):
    sessionId: str = Field(min_length=1)
    chunkIndex: int = Field(ge=0)
    audioData: str
    speaker: str | None = None

    @field_validator("audioData")
    @classmethod
    def _check_base64(cls, value: str) -> str:
        try:
            decoded = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("audioData is not valid base64") from e
        if not decoded:
            raise ValueError("audioData is empty")
        return value

    def audio_bytes(self) -> bytes:
        return base64.b64decode(self.audioData)


class SessionPayload(BaseModel):
    sessionId: str = Field(min_length=1)


class HeartbeatPayload(BaseModel):
    sessionId: str | None = None
    timestamp: float | None = None


def format_validation_error(exc) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
    return "Invalid payload - " + "; ".join(parts)
