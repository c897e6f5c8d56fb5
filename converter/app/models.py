import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

CRF_MIN = 0
CRF_MAX = 63
DEFAULT_CRF = 30
DEFAULT_AUDIO_BITRATE = "128k"
# libopus accepts 6 kb/s .. 510 kb/s
AUDIO_BITRATE_MIN_K = 6
AUDIO_BITRATE_MAX_K = 510

_BITRATE_RE = re.compile(r"^(\d{1,3})k$")
_TRUE_TOKENS = frozenset(["1", "true", "yes", "on"])
_FALSE_TOKENS = frozenset(["", "0", "false", "no", "off"])


class ConversionOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    crf: int = DEFAULT_CRF
    audio_bitrate: str = DEFAULT_AUDIO_BITRATE
    detect_green: bool = False

    @field_validator("crf")
    @classmethod
    def validate_crf(cls, v: int) -> int:
        if not (CRF_MIN <= v <= CRF_MAX):
            raise ValueError(f"crf must be between {CRF_MIN} and {CRF_MAX}")
        return v

    @field_validator("audio_bitrate")
    @classmethod
    def validate_audio_bitrate(cls, v: str) -> str:
        token = v.strip().lower()
        m = _BITRATE_RE.match(token)
        if not m or not (AUDIO_BITRATE_MIN_K <= int(m.group(1)) <= AUDIO_BITRATE_MAX_K):
            raise ValueError(
                f"audio_bitrate must look like '128k' and lie between "
                f"{AUDIO_BITRATE_MIN_K}k and {AUDIO_BITRATE_MAX_K}k"
            )
        return token

    @field_validator("detect_green", mode="before")
    @classmethod
    def parse_flag(cls, v):
        if isinstance(v, str):
            token = v.strip().lower()
            if token in _TRUE_TOKENS:
                return True
            if token in _FALSE_TOKENS:
                return False
            raise ValueError("detect_green must be true or false")
        return v


class UploadResponse(BaseModel):
    job_id: str
    status: str


class StatusResponse(BaseModel):
    status: str
    progress: int
    detected_color: Optional[str] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
