import os
import tempfile
from dotenv import load_dotenv

load_dotenv()

VERSION = "0.3.0"

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8666"))

DATA_DIR = os.getenv("DATA_DIR") or os.path.join(tempfile.gettempdir(), "webm-converter")
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "500"))
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024
DOWNLOAD_CHUNK_BYTES = int(os.getenv("DOWNLOAD_CHUNK_BYTES", str(1024 * 1024)))

# Encoder subprocesses allowed to run at once; further jobs wait in line.
MAX_CONCURRENT_ENCODES = int(os.getenv("MAX_CONCURRENT_ENCODES", "2"))
ENCODER_THREADS = int(os.getenv("ENCODER_THREADS", "2"))
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")

PROBE_TIMEOUT_SECONDS = float(os.getenv("PROBE_TIMEOUT_SECONDS", "30"))
SAMPLE_TIMEOUT_SECONDS = float(os.getenv("SAMPLE_TIMEOUT_SECONDS", "30"))
ENCODE_TIMEOUT_SECONDS = float(os.getenv("ENCODE_TIMEOUT_SECONDS", "1800"))
DIAGNOSTIC_LIMIT = int(os.getenv("DIAGNOSTIC_LIMIT", "2000"))

RETENTION_SECONDS = float(os.getenv("RETENTION_SECONDS", "1800"))
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
